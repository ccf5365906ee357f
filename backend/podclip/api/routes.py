"""API routes."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from podclip.config import settings
from podclip.db.database import get_db
from podclip.errors import InvalidStatusTransition, RunAlreadyActive
from podclip.services.clip_generation import ClipGenerationService
from podclip.services.track_selector import TrackSelector
from podclip.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available
from podclip.workers.workflow_runner import WorkflowRunner, workflow_runner
from podclip.api.schemas import (
    ID_PATTERN,
    ClipWorkflowEvent,
    ClipGenerationRequest,
    ClipGenerationResponse,
    ClipResponse,
    TrackUpsert,
    TrackResponse,
    WorkflowRunResponse,
    HealthResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_runner() -> WorkflowRunner:
    """Dependency to get the workflow runner."""
    return workflow_runner


# =============================================================================
# Health & System
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check API health and dependencies."""
    ffmpeg_ok = check_ffmpeg_available()
    ffprobe_ok = check_ffprobe_available()

    all_ok = ffmpeg_ok and ffprobe_ok

    message = None
    if not all_ok:
        missing = []
        if not ffmpeg_ok:
            missing.append("ffmpeg")
        if not ffprobe_ok:
            missing.append("ffprobe")
        message = f"Missing dependencies: {', '.join(missing)}"

    return HealthResponse(
        status="healthy" if all_ok else "degraded",
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        storage_backend=settings.storage_backend,
        message=message
    )


# =============================================================================
# Workflows
# =============================================================================

@router.post("/workflows/clips", response_model=WorkflowRunResponse, status_code=202)
async def start_clip_workflow(
    event: ClipWorkflowEvent,
    db: AsyncSession = Depends(get_db),
    runner: WorkflowRunner = Depends(get_runner)
):
    """Start a workflow run for one clip."""
    service = ClipGenerationService(db, runner)
    try:
        run = await service.start_clip_workflow(event.to_workflow_input())
    except (RunAlreadyActive, InvalidStatusTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return WorkflowRunResponse(**run.to_dict())


@router.get("/runs/{run_id}", response_model=WorkflowRunResponse)
async def get_run(run_id: int, db: AsyncSession = Depends(get_db)):
    """Get a workflow run."""
    service = ClipGenerationService(db)
    run = await service.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Workflow run not found")
    return WorkflowRunResponse(**run.to_dict())


# =============================================================================
# Clips
# =============================================================================

@router.post("/clips", response_model=ClipResponse, status_code=201)
async def register_clip(
    event: ClipWorkflowEvent,
    db: AsyncSession = Depends(get_db),
    runner: WorkflowRunner = Depends(get_runner)
):
    """Register a clip request as pending without starting it."""
    service = ClipGenerationService(db, runner)
    workflow_input = event.to_workflow_input()
    await service.register_clip(workflow_input)
    clip = await service.get_clip_with_history(
        workflow_input.tenant_id, workflow_input.episode_id, workflow_input.clip_id
    )
    return ClipResponse(**clip)


@router.get("/episodes/{episode_id}/clips/{clip_id}", response_model=ClipResponse)
async def get_clip(
    episode_id: str = Path(..., pattern=ID_PATTERN),
    clip_id: str = Path(..., pattern=ID_PATTERN),
    tenant_id: str = Query(..., alias="tenantId", pattern=ID_PATTERN),
    db: AsyncSession = Depends(get_db),
    runner: WorkflowRunner = Depends(get_runner)
):
    """Get a clip with its status history."""
    service = ClipGenerationService(db, runner)
    clip = await service.get_clip_with_history(tenant_id, episode_id, clip_id)
    if not clip:
        raise HTTPException(status_code=404, detail="Clip not found")
    return ClipResponse(**clip)


@router.post("/episodes/{episode_id}/clip-generation", response_model=ClipGenerationResponse)
async def start_clip_generation(
    data: ClipGenerationRequest,
    episode_id: str = Path(..., pattern=ID_PATTERN),
    db: AsyncSession = Depends(get_db),
    runner: WorkflowRunner = Depends(get_runner)
):
    """Start workflows for every pending clip of an episode."""
    service = ClipGenerationService(db, runner)
    summary = await service.start_clip_generation(data.tenant_id, episode_id)
    return ClipGenerationResponse(**summary)


# =============================================================================
# Tracks
# =============================================================================

@router.post("/episodes/{episode_id}/tracks", response_model=TrackResponse)
async def upsert_track(
    data: TrackUpsert,
    episode_id: str = Path(..., pattern=ID_PATTERN),
    runner: WorkflowRunner = Depends(get_runner)
):
    """Register a track or update its speakers and manifest key."""
    selector = TrackSelector(runner.session_maker)
    track = await selector.upsert_track(
        data.tenant_id,
        episode_id,
        data.track_name,
        data.speakers,
        data.manifest_key,
    )
    return TrackResponse.model_validate(track)
