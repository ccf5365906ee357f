"""Clip generation service layer."""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from podclip.errors import InvalidSegment, InvalidStatusTransition, RunAlreadyActive
from podclip.models.clip import Clip, ClipStatus
from podclip.models.workflow_run import WorkflowRun
from podclip.pipeline.chunk_mapper import LogicalSegment
from podclip.services.status_history import ClipStatusLedger
from podclip.workers.clip_workflow import ClipWorkflowInput
from podclip.workers.workflow_runner import WorkflowRunner, workflow_runner

logger = logging.getLogger(__name__)


def workflow_input_from_clip(clip: Clip) -> ClipWorkflowInput:
    """Rebuild the workflow input from a stored clip record."""
    if not clip.segments:
        raise InvalidSegment(f"Clip {clip.clip_id} has no segments")
    segments = sorted(
        (LogicalSegment.from_dict(s) for s in clip.segments or []),
        key=lambda s: s.order,
    )
    return ClipWorkflowInput(
        tenant_id=clip.tenant_id,
        episode_id=clip.episode_id,
        clip_id=clip.clip_id,
        segments=segments,
        track_name=clip.track_name,
    )


class ClipGenerationService:
    """Service for starting and inspecting clip workflows."""

    def __init__(self, db: AsyncSession, runner: Optional[WorkflowRunner] = None):
        self.db = db
        self.runner = runner or workflow_runner
        self.ledger = ClipStatusLedger(runner.session_maker if runner else None)

    async def get_clip(self, tenant_id: str, episode_id: str, clip_id: str) -> Optional[Clip]:
        result = await self.db.execute(
            select(Clip).where(
                Clip.tenant_id == tenant_id,
                Clip.episode_id == episode_id,
                Clip.clip_id == clip_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_clip_with_history(self, tenant_id: str, episode_id: str, clip_id: str) -> Optional[dict]:
        clip = await self.get_clip(tenant_id, episode_id, clip_id)
        if clip is None:
            return None
        data = clip.to_dict()
        data["status_history"] = await self.ledger.history(clip.entity_id)
        return data

    async def get_run(self, run_id: int) -> Optional[WorkflowRun]:
        return await self.db.get(WorkflowRun, run_id)

    async def register_clip(self, workflow_input: ClipWorkflowInput) -> Clip:
        """Persist a clip request as pending without starting a run."""
        return await self.runner.workflow.ensure_clip(workflow_input)

    async def start_clip_workflow(self, workflow_input: ClipWorkflowInput) -> WorkflowRun:
        """
        Start a workflow run for one clip.

        Args:
            workflow_input: Validated workflow input

        Returns:
            The queued run record

        Raises:
            RunAlreadyActive: If the clip already has a run in progress
            InvalidStatusTransition: If the clip is already complete
        """
        entity_id = workflow_input.entity_id
        if self.runner.is_running(entity_id):
            raise RunAlreadyActive(f"Clip {workflow_input.clip_id} already has an active run")

        current = await self.ledger.current_status(entity_id)
        if current == ClipStatus.COMPLETE.value:
            raise InvalidStatusTransition(f"Clip {workflow_input.clip_id} is already complete")

        run = await self.runner.start_run(workflow_input)
        if run is None:
            raise RunAlreadyActive(f"Clip {workflow_input.clip_id} already has an active run")

        logger.info(f"Started workflow run {run.id} for clip {workflow_input.clip_id}")
        return run

    async def list_pending_clips(self, tenant_id: str, episode_id: str) -> List[Clip]:
        result = await self.db.execute(
            select(Clip)
            .where(
                Clip.tenant_id == tenant_id,
                Clip.episode_id == episode_id,
                Clip.status == ClipStatus.PENDING,
            )
            .order_by(Clip.clip_id)
        )
        return result.scalars().all()

    async def start_clip_generation(self, tenant_id: str, episode_id: str) -> dict:
        """
        Start a run for every pending clip of an episode.

        Per-clip failures are reported in the summary rather than raised.

        Returns:
            ``{total, started, failed, executions}``
        """
        clips = await self.list_pending_clips(tenant_id, episode_id)
        if not clips:
            logger.info(f"No pending clips found for episode {episode_id}")

        executions = []
        for clip in clips:
            try:
                workflow_input = workflow_input_from_clip(clip)
                run = await self.start_clip_workflow(workflow_input)
            except Exception as e:
                logger.error(f"Failed to start workflow for clip {clip.clip_id}: {e}")
                executions.append({
                    "clipId": clip.clip_id,
                    "status": "failed",
                    "error": str(e),
                })
                continue
            executions.append({
                "clipId": clip.clip_id,
                "status": "started",
                "runId": run.id,
            })

        started = sum(1 for e in executions if e["status"] == "started")
        summary = {
            "total": len(clips),
            "started": started,
            "failed": len(executions) - started,
            "executions": executions,
        }
        logger.info(
            f"Clip generation for episode {episode_id}: "
            f"{summary['started']}/{summary['total']} started, {summary['failed']} failed"
        )
        return summary
