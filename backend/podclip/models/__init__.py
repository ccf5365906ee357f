# Models module
from podclip.models.track import Track
from podclip.models.clip import Clip, ClipStatus
from podclip.models.status_entry import StatusEntry
from podclip.models.workflow_run import WorkflowRun, RunStatus

__all__ = ["Track", "Clip", "ClipStatus", "StatusEntry", "WorkflowRun", "RunStatus"]
