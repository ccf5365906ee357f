"""Error taxonomy for the clip pipeline.

Every error carries a ``kind`` (its class name) that ends up in status
history entries, and a ``retryable`` flag consulted by the workflow's retry
policy. Only transient infrastructure errors are retryable.
"""


class PodclipError(Exception):
    """Base class for pipeline errors."""

    retryable = False

    @property
    def kind(self) -> str:
        return type(self).__name__


# Input / validation

class InvalidTimecode(PodclipError, ValueError):
    """A time string or number could not be converted to seconds."""


class InvalidSegment(PodclipError, ValueError):
    """A logical segment has unusable timing."""


class MalformedManifest(PodclipError):
    """Playlist text is not a usable HLS media playlist."""


class ManifestNotFound(PodclipError):
    """The track manifest does not exist in storage."""


class NoMatchingChunks(PodclipError):
    """No chunk overlaps the requested segment interval."""


# Media processing

class TranscodeFailed(PodclipError):
    """Both re-encode and stream copy failed, or the output is unusable."""


# Storage

class StorageError(PodclipError):
    """Object storage operation failed."""


class ObjectNotFound(StorageError):
    """Requested object does not exist."""


class StorageThrottled(StorageError):
    """Storage asked us to slow down."""

    retryable = True


class StorageIntegrityError(StorageError):
    """Uploaded object does not match the local file."""


class SegmentDownloadFailed(StorageError):
    """One or more materialized segments could not be retrieved."""


# Workflow

class StageTimeout(PodclipError):
    """A workflow stage exceeded its time ceiling."""


class InvalidStatusTransition(PodclipError):
    """Status history append would break the clip state machine."""


class WorkflowFailed(PodclipError):
    """A clip workflow run ended in the failed state."""

    def __init__(self, clip_id: str, stage: str, cause: BaseException):
        self.clip_id = clip_id
        self.stage = stage
        self.cause = cause
        super().__init__(f"Clip {clip_id} failed during {stage}: {cause}")


class RunAlreadyActive(PodclipError):
    """A workflow run for the clip is already in progress."""
