"""Background workflow runner using asyncio."""
import asyncio
import logging
import traceback
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from podclip.db.database import async_session_maker
from podclip.errors import WorkflowFailed
from podclip.models.workflow_run import RunStatus, WorkflowRun
from podclip.pipeline.clip_stitcher import ClipStitcher
from podclip.pipeline.manifest import ManifestCache, ManifestLoader
from podclip.pipeline.segment_composer import SegmentComposer
from podclip.services.status_history import ClipStatusLedger
from podclip.services.track_selector import TrackSelector
from podclip.storage import create_storage
from podclip.storage.base import ObjectStorage
from podclip.workers.clip_workflow import ClipWorkflow, ClipWorkflowInput

logger = logging.getLogger(__name__)


def build_clip_workflow(storage: Optional[ObjectStorage] = None, session_maker=None, transcoder=None) -> ClipWorkflow:
    """Wire a workflow against the configured storage backend and database."""
    storage = storage or create_storage()
    session_maker = session_maker or async_session_maker
    composer = SegmentComposer(
        storage,
        manifest_loader=ManifestLoader(storage, ManifestCache()),
        track_selector=TrackSelector(session_maker),
        transcoder=transcoder,
    )
    stitcher = ClipStitcher(storage, transcoder=transcoder)
    return ClipWorkflow(
        composer,
        stitcher,
        ledger=ClipStatusLedger(session_maker),
        session_maker=session_maker,
    )


class WorkflowRunner:
    """Runs clip workflows as background tasks, at most one per clip."""

    def __init__(self, workflow_factory: Callable[[], ClipWorkflow] = build_clip_workflow, session_maker=None):
        self.workflow_factory = workflow_factory
        self.session_maker = session_maker or async_session_maker
        self._workflow: Optional[ClipWorkflow] = None
        self._running_runs: Dict[str, asyncio.Task] = {}
        # Clips between the duplicate check and task creation
        self._starting: Set[str] = set()
        self._run_ids: Dict[str, int] = {}

    @property
    def workflow(self) -> ClipWorkflow:
        if self._workflow is None:
            self._workflow = self.workflow_factory()
        return self._workflow

    async def start_run(self, workflow_input: ClipWorkflowInput) -> Optional[WorkflowRun]:
        """
        Start a background workflow run for a clip.

        Args:
            workflow_input: Validated clip request

        Returns:
            The new run record, or None if a run for the clip is already active
        """
        entity_id = workflow_input.entity_id
        if self.is_running(entity_id):
            logger.warning(f"Clip {entity_id} already has an active run")
            return None

        # Reserved before the first await so a concurrent start sees it
        self._starting.add(entity_id)
        try:
            clip = await self.workflow.ensure_clip(workflow_input)

            async with self.session_maker() as session:
                run = WorkflowRun(
                    clip_pk=clip.id,
                    status=RunStatus.PENDING,
                    attempt=(clip.attempts or 0) + 1,
                    message="Queued",
                )
                session.add(run)
                await session.commit()
                await session.refresh(run)

            task = asyncio.create_task(self._run_workflow(run.id, workflow_input))
            self._running_runs[entity_id] = task
            self._run_ids[entity_id] = run.id
        finally:
            self._starting.discard(entity_id)
        return run

    async def _update_run(self, run_id: int, **values):
        async with self.session_maker() as session:
            run = await session.get(WorkflowRun, run_id)
            if not run:
                logger.error(f"Workflow run {run_id} not found")
                return
            for name, value in values.items():
                setattr(run, name, value)
            await session.commit()

    async def _run_workflow(self, run_id: int, workflow_input: ClipWorkflowInput):
        """Run a workflow with error handling and run record updates."""
        entity_id = workflow_input.entity_id
        try:
            await self._update_run(
                run_id,
                status=RunStatus.RUNNING,
                started_at=datetime.utcnow(),
                message="Running...",
            )

            result = await self.workflow.run(workflow_input)

            await self._update_run(
                run_id,
                status=RunStatus.COMPLETED,
                message="Completed successfully",
                result=result.to_dict(),
                completed_at=datetime.utcnow(),
            )
            logger.info(f"Workflow run {run_id} for {entity_id} completed")

        except asyncio.CancelledError:
            await self._update_run(
                run_id,
                status=RunStatus.CANCELLED,
                message="Run cancelled",
                completed_at=datetime.utcnow(),
            )
            logger.info(f"Workflow run {run_id} for {entity_id} was cancelled")

        except WorkflowFailed as e:
            await self._update_run(
                run_id,
                status=RunStatus.FAILED,
                message=f"Failed during {e.stage}: {e.cause}",
                error=str(e),
                completed_at=datetime.utcnow(),
            )
            logger.error(f"Workflow run {run_id} failed: {e}")

        except Exception as e:
            error_trace = traceback.format_exc()
            logger.error(f"Workflow run {run_id} failed: {e}\n{error_trace}")
            await self._update_run(
                run_id,
                status=RunStatus.FAILED,
                message=f"Failed: {e}",
                error=error_trace,
                completed_at=datetime.utcnow(),
            )

        finally:
            self._running_runs.pop(entity_id, None)
            self._run_ids.pop(entity_id, None)

    async def cancel_run(self, entity_id: str) -> bool:
        """Cancel the active run of a clip."""
        task = self._running_runs.get(entity_id)
        if task:
            task.cancel()
            return True
        return False

    def is_running(self, entity_id: str) -> bool:
        """Check if a clip currently has an active run."""
        return entity_id in self._running_runs or entity_id in self._starting

    def active_run_id(self, entity_id: str) -> Optional[int]:
        return self._run_ids.get(entity_id)

    async def wait(self, entity_id: str):
        """Wait for the active run of a clip to finish, if any."""
        task = self._running_runs.get(entity_id)
        if task:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self):
        """Cancel all running workflows."""
        for task in self._running_runs.values():
            task.cancel()

        if self._running_runs:
            await asyncio.gather(
                *self._running_runs.values(),
                return_exceptions=True
            )

        self._running_runs.clear()
        self._run_ids.clear()


# Global workflow runner instance
workflow_runner = WorkflowRunner()
