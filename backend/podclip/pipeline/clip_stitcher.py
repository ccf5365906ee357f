"""Stitch materialized segments into the final clip."""
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from podclip.config import settings
from podclip.errors import SegmentDownloadFailed, StorageError, StorageIntegrityError
from podclip.pipeline.keys import clip_key
from podclip.storage.base import ObjectStorage
from podclip.utils.ffmpeg import MediaInfo, Transcoder, transcoder as default_transcoder
from podclip.utils.timecode import format_seconds

logger = logging.getLogger(__name__)

VERIFIED_METADATA_FIELDS = ("episode-id", "clip-id", "duration", "resolution", "video-codec")


@dataclass
class ClipMetadata:
    """Descriptive metadata of a stitched clip."""
    duration: float
    file_size: int
    bit_rate: int
    width: int
    height: int
    frame_rate: str
    video_codec: str
    pixel_format: str
    audio_codec: str
    sample_rate: int
    channels: int
    audio_bit_rate: int
    format_name: str
    has_video: bool
    has_audio: bool
    stream_count: int

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def aspect_ratio(self) -> str:
        return f"{self.width / self.height:.2f}" if self.width and self.height else "0.00"

    @property
    def is_hd(self) -> bool:
        return self.width >= 1280 and self.height >= 720

    @property
    def is_full_hd(self) -> bool:
        return self.width >= 1920 and self.height >= 1080

    @property
    def is_4k(self) -> bool:
        return self.width >= 3840 and self.height >= 2160

    @classmethod
    def from_media_info(cls, info: MediaInfo, file_size: int) -> "ClipMetadata":
        return cls(
            duration=info.duration,
            file_size=file_size,
            bit_rate=info.bit_rate,
            width=info.width,
            height=info.height,
            frame_rate=info.frame_rate,
            video_codec=info.video_codec or "unknown",
            pixel_format=info.pixel_format or "unknown",
            audio_codec=info.audio_codec or "unknown",
            sample_rate=info.sample_rate,
            channels=info.channels,
            audio_bit_rate=info.audio_bit_rate,
            format_name=info.format_name,
            has_video=info.has_video,
            has_audio=info.has_audio,
            stream_count=info.stream_count,
        )

    def to_dict(self) -> dict:
        return {
            "duration": format_seconds(self.duration),
            "duration_seconds": self.duration,
            "file_size": self.file_size,
            "bit_rate": self.bit_rate,
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "aspect_ratio": self.aspect_ratio,
            "frame_rate": self.frame_rate,
            "video_codec": self.video_codec,
            "pixel_format": self.pixel_format,
            "audio_codec": self.audio_codec,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "audio_bit_rate": self.audio_bit_rate,
            "is_hd": self.is_hd,
            "is_full_hd": self.is_full_hd,
            "is_4k": self.is_4k,
            "has_video": self.has_video,
            "has_audio": self.has_audio,
            "stream_count": self.stream_count,
            "format_name": self.format_name,
        }

    def to_object_metadata(self) -> Dict[str, str]:
        """Metadata as object-level string key/value pairs."""
        return {
            "duration": format_seconds(self.duration),
            "duration-seconds": f"{self.duration:.3f}",
            "resolution": self.resolution,
            "width": str(self.width),
            "height": str(self.height),
            "video-codec": self.video_codec,
            "audio-codec": self.audio_codec,
            "bit-rate": str(self.bit_rate),
            "frame-rate": self.frame_rate,
            "sample-rate": str(self.sample_rate),
            "channels": str(self.channels),
            "quality": "4k" if self.is_4k else "fullhd" if self.is_full_hd else "hd" if self.is_hd else "sd",
        }


@dataclass
class VerificationReport:
    size_match: bool
    expected_size: int
    actual_size: int
    metadata_checks: Dict[str, dict] = field(default_factory=dict)

    @property
    def metadata_valid(self) -> bool:
        return all(check["match"] for check in self.metadata_checks.values())

    @property
    def valid(self) -> bool:
        return self.size_match and self.metadata_valid

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "size_match": self.size_match,
            "metadata_valid": self.metadata_valid,
            "expected_size": self.expected_size,
            "actual_size": self.actual_size,
            "metadata_checks": self.metadata_checks,
        }


@dataclass
class CleanupReport:
    deleted: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"deleted": self.deleted, "failed": self.failed, "errors": self.errors}


@dataclass
class StitchResult:
    key: str
    file_size: int
    duration: float
    resolution: str
    segment_count: int
    metadata: ClipMetadata
    verification: VerificationReport
    cleanup: CleanupReport
    uploaded_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "file_size": self.file_size,
            "duration": self.duration,
            "resolution": self.resolution,
            "segment_count": self.segment_count,
            "uploaded_at": self.uploaded_at,
            "metadata": self.metadata.to_dict(),
            "verification": self.verification.to_dict(),
            "cleanup": self.cleanup.to_dict(),
        }


class ClipStitcher:
    """Concatenates materialized segments in caller order and publishes the clip."""

    def __init__(
        self,
        storage: ObjectStorage,
        transcoder: Optional[Transcoder] = None,
        work_dir: Optional[Path] = None,
        download_attempts: int = None,
        download_backoff: float = None,
    ):
        self.storage = storage
        self.transcoder = transcoder or default_transcoder
        self.work_dir = Path(work_dir or settings.work_dir)
        self.download_attempts = (
            download_attempts if download_attempts is not None else settings.stitch_download_attempts
        )
        if self.download_attempts < 1:
            raise ValueError(f"download_attempts must be at least 1, got {self.download_attempts}")
        self.download_backoff = (
            download_backoff if download_backoff is not None else settings.stitch_download_backoff_seconds
        )

    async def stitch(
        self,
        tenant_id: str,
        episode_id: str,
        clip_id: str,
        segment_keys: Sequence[str],
    ) -> StitchResult:
        """
        Build, upload and verify the final clip, then remove its segments.

        Args:
            tenant_id: Tenant namespace
            episode_id: Episode ID
            clip_id: Clip ID
            segment_keys: Materialized segment keys in final clip order

        Raises:
            SegmentDownloadFailed: If any segment cannot be retrieved
            TranscodeFailed: If concatenation fails
            StorageIntegrityError: If the uploaded clip size does not match
        """
        if not segment_keys:
            raise ValueError("No segment files provided for stitching")

        key = clip_key(tenant_id, episode_id, clip_id)

        with tempfile.TemporaryDirectory(prefix=f"clip-{clip_id}-", dir=self.work_dir) as tmp:
            tmp_dir = Path(tmp)
            local_segments = await self.download_segments(segment_keys, tmp_dir)

            output = tmp_dir / f"{clip_id}_final.mp4"
            await self.transcoder.concat(local_segments, output)

            info = await self.transcoder.verify_output(output)
            file_size = output.stat().st_size
            metadata = ClipMetadata.from_media_info(info, file_size)

            object_metadata = {
                "episode-id": episode_id,
                "clip-id": clip_id,
                "content-type": "final-clip",
                "file-size": str(file_size),
                "segment-count": str(len(segment_keys)),
                **metadata.to_object_metadata(),
            }
            upload = await self.storage.upload_file(key, output, metadata=object_metadata)

            verification = await self.verify_clip(key, file_size, {
                field_name: object_metadata[field_name] for field_name in VERIFIED_METADATA_FIELDS
            })
            if not verification.size_match:
                raise StorageIntegrityError(
                    f"Uploaded clip {key} is {verification.actual_size} bytes, expected {file_size}"
                )
            if not verification.metadata_valid:
                logger.warning(f"Metadata mismatch on {key}: {verification.metadata_checks}")

        cleanup = await self.cleanup_segments(segment_keys)

        logger.info(
            f"Stitched clip {key} from {len(segment_keys)} segments: "
            f"{metadata.duration:.2f}s {metadata.resolution}, {file_size} bytes"
        )
        return StitchResult(
            key=key,
            file_size=file_size,
            duration=metadata.duration,
            resolution=metadata.resolution,
            segment_count=len(segment_keys),
            metadata=metadata,
            verification=verification,
            cleanup=cleanup,
            uploaded_at=upload.uploaded_at or datetime.now(timezone.utc).isoformat(),
        )

    async def download_segments(self, segment_keys: Sequence[str], tmp_dir: Path) -> List[Path]:
        """Download every segment, keeping caller order."""
        local_files = []
        errors = []

        for i, segment_key in enumerate(segment_keys):
            local_path = tmp_dir / f"segment_{i:03d}.mp4"
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.download_attempts),
                    wait=wait_fixed(self.download_backoff),
                    reraise=True,
                ):
                    with attempt:
                        await self._download_one(segment_key, local_path)
            except (StorageError, OSError) as e:
                logger.error(f"Failed to download segment {i} ({segment_key}): {e}")
                errors.append({"index": i, "key": segment_key, "error": str(e)})
                continue
            local_files.append(local_path)

        if errors:
            raise SegmentDownloadFailed(
                f"Failed to download {len(errors)} out of {len(segment_keys)} segments: "
                + ", ".join(e["key"] for e in errors)
            )
        return local_files

    async def _download_one(self, segment_key: str, local_path: Path):
        size = await self.storage.download_file(segment_key, local_path)
        if size == 0:
            raise StorageError(f"Downloaded segment is empty: {segment_key}")

    async def verify_clip(self, key: str, expected_size: int, expected_metadata: Dict[str, str]) -> VerificationReport:
        head = await self.storage.head(key)
        checks = {}
        for name, expected in expected_metadata.items():
            actual = head.metadata.get(name)
            checks[name] = {
                "expected": expected,
                "actual": actual,
                "match": actual == expected if expected else True,
            }
        return VerificationReport(
            size_match=head.size == expected_size,
            expected_size=expected_size,
            actual_size=head.size,
            metadata_checks=checks,
        )

    async def cleanup_segments(self, segment_keys: Sequence[str]) -> CleanupReport:
        """
        Best-effort removal of segment objects in batches.

        Never raises: leftover segments cost storage, not correctness.
        """
        report = CleanupReport()
        batch_size = max(1, settings.cleanup_batch_size)

        for start in range(0, len(segment_keys), batch_size):
            batch = list(segment_keys[start:start + batch_size])
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max(1, settings.cleanup_attempts)),
                    wait=wait_fixed(self.download_backoff),
                ):
                    with attempt:
                        result = await self.storage.delete_objects(batch)
            except RetryError as e:
                last = e.last_attempt.exception()
                logger.error(f"Failed to delete segment batch starting at {start}: {last}")
                report.failed += len(batch)
                report.errors.append({"code": "BatchDeleteFailed", "message": str(last), "keys": batch})
                continue

            report.deleted += len(result.deleted)
            report.failed += len(result.errors)
            report.errors.extend(result.errors)

        if report.failed:
            logger.warning(
                f"{report.failed} segment objects could not be deleted; "
                "this costs storage but does not affect the clip"
            )
        return report
