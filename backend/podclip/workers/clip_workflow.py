"""Durable per-clip workflow.

    pending -> in_progress -> segments_extracting -> segments_complete
            -> stitching -> complete

Any stage may move to ``failed``. Every transition is appended to the
clip's status history before the next side effect, so a run can be
diagnosed from persisted state alone. Segment extraction fans out under a
semaphore; the first failure cancels the rest and no clip is stitched.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from podclip.config import settings
from podclip.db.database import async_session_maker
from podclip.errors import InvalidStatusTransition, PodclipError, StageTimeout, WorkflowFailed
from podclip.models.clip import Clip, ClipStatus, clip_entity_id
from podclip.pipeline.chunk_mapper import LogicalSegment
from podclip.pipeline.clip_stitcher import ClipStitcher, StitchResult
from podclip.pipeline.segment_composer import MaterializedSegment, SegmentComposer, SegmentRequest
from podclip.services.status_history import ClipStatusLedger, StatusLedger

logger = logging.getLogger(__name__)

STAGE_START = "start"
STAGE_EXTRACTION = "extraction"
STAGE_STITCHING = "stitching"
STAGE_FINALIZE = "finalize"

# Statuses a crashed run can leave behind
INTERRUPTED_STATUSES = {
    ClipStatus.IN_PROGRESS.value,
    ClipStatus.SEGMENTS_EXTRACTING.value,
    ClipStatus.SEGMENTS_COMPLETE.value,
    ClipStatus.STITCHING.value,
}


@dataclass
class ClipWorkflowInput:
    """Validated workflow input; segments are already in stitch order."""
    tenant_id: str
    episode_id: str
    clip_id: str
    segments: List[LogicalSegment]
    track_name: Optional[str] = None

    def __post_init__(self):
        # Rejects ids that would collide in the status history key
        clip_entity_id(self.tenant_id, self.episode_id, self.clip_id)

    @property
    def entity_id(self) -> str:
        return clip_entity_id(self.tenant_id, self.episode_id, self.clip_id)


@dataclass
class ClipWorkflowResult:
    clip_id: str
    clip_key: str
    file_size: int
    duration: float
    resolution: str
    segment_count: int
    processing_duration: float
    segments: List[MaterializedSegment] = field(default_factory=list)
    verification: dict = field(default_factory=dict)
    cleanup: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "clip_id": self.clip_id,
            "clip_key": self.clip_key,
            "file_size": self.file_size,
            "duration": self.duration,
            "resolution": self.resolution,
            "segment_count": self.segment_count,
            "processing_duration": self.processing_duration,
            "segments": [s.to_dict() for s in self.segments],
            "verification": self.verification,
            "cleanup": self.cleanup,
        }


class _SegmentFailure(Exception):
    def __init__(self, index: int, cause: BaseException):
        self.index = index
        self.cause = cause
        super().__init__(f"Segment {index} failed: {cause}")


def is_retryable(error: BaseException) -> bool:
    """Only transient infrastructure errors are retried automatically."""
    return isinstance(error, PodclipError) and error.retryable


class ClipWorkflow:
    """Runs the clip state machine over a composer and a stitcher."""

    def __init__(
        self,
        composer: SegmentComposer,
        stitcher: ClipStitcher,
        ledger: Optional[StatusLedger] = None,
        session_maker=None,
        concurrency: int = None,
        extraction_timeout: float = None,
        stitching_timeout: float = None,
        retry_attempts: int = None,
        retry_min_wait: float = None,
        retry_max_wait: float = None,
    ):
        self.composer = composer
        self.stitcher = stitcher
        self.session_maker = session_maker or async_session_maker
        self.ledger = ledger or ClipStatusLedger(self.session_maker)
        self.concurrency = concurrency if concurrency is not None else settings.segment_concurrency
        self.extraction_timeout = (
            extraction_timeout if extraction_timeout is not None else settings.extraction_timeout_seconds
        )
        self.stitching_timeout = (
            stitching_timeout if stitching_timeout is not None else settings.stitching_timeout_seconds
        )
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.storage_retry_attempts
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be at least 1, got {self.retry_attempts}")
        self.retry_min_wait = retry_min_wait if retry_min_wait is not None else settings.storage_retry_min_wait
        self.retry_max_wait = retry_max_wait if retry_max_wait is not None else settings.storage_retry_max_wait

    # -------------------------------------------------------------------------
    # Durable state
    # -------------------------------------------------------------------------

    async def ensure_clip(self, workflow_input: ClipWorkflowInput) -> Clip:
        """
        Create the clip record if missing and seed its status history.

        Creation is conditional: an existing record is returned with its
        segments and track refreshed, and its history is left untouched.
        """
        segments = [s.to_dict() for s in workflow_input.segments]
        async with self.session_maker() as session:
            clip = Clip(
                tenant_id=workflow_input.tenant_id,
                episode_id=workflow_input.episode_id,
                clip_id=workflow_input.clip_id,
                entity_id=workflow_input.entity_id,
                segments=segments,
                track_name=workflow_input.track_name,
                status=ClipStatus.PENDING,
            )
            session.add(clip)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                clip = await self._get_clip(session, workflow_input)
                if clip.status != ClipStatus.COMPLETE:
                    clip.segments = segments
                    clip.track_name = workflow_input.track_name
                    await session.commit()

        await self.ledger.initialize(workflow_input.entity_id, ClipStatus.PENDING)
        return clip

    async def _get_clip(self, session, workflow_input: ClipWorkflowInput) -> Clip:
        result = await session.execute(
            select(Clip).where(
                Clip.tenant_id == workflow_input.tenant_id,
                Clip.episode_id == workflow_input.episode_id,
                Clip.clip_id == workflow_input.clip_id,
            )
        )
        return result.scalar_one()

    async def _increment_attempts(self, workflow_input: ClipWorkflowInput) -> int:
        async with self.session_maker() as session:
            await session.execute(
                update(Clip)
                .where(
                    Clip.tenant_id == workflow_input.tenant_id,
                    Clip.episode_id == workflow_input.episode_id,
                    Clip.clip_id == workflow_input.clip_id,
                )
                .values(attempts=Clip.attempts + 1)
            )
            await session.commit()
            clip = await self._get_clip(session, workflow_input)
            return clip.attempts

    async def _update_clip(self, workflow_input: ClipWorkflowInput, **values):
        async with self.session_maker() as session:
            await session.execute(
                update(Clip)
                .where(
                    Clip.tenant_id == workflow_input.tenant_id,
                    Clip.episode_id == workflow_input.episode_id,
                    Clip.clip_id == workflow_input.clip_id,
                )
                .values(**values)
            )
            await session.commit()

    # -------------------------------------------------------------------------
    # Stage execution
    # -------------------------------------------------------------------------

    async def _with_retry(self, fn, *args):
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait),
            reraise=True,
        ):
            if attempt.retry_state.attempt_number > 1:
                logger.warning(f"Retrying {fn.__qualname__} (attempt {attempt.retry_state.attempt_number})")
            with attempt:
                return await fn(*args)

    async def _extract_segments(self, workflow_input: ClipWorkflowInput) -> List[MaterializedSegment]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def extract(index: int, segment: LogicalSegment) -> MaterializedSegment:
            request = SegmentRequest(
                tenant_id=workflow_input.tenant_id,
                episode_id=workflow_input.episode_id,
                clip_id=workflow_input.clip_id,
                index=index,
                segment=segment,
                track_name=workflow_input.track_name,
            )
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self._with_retry(self.composer.compose, request),
                        timeout=self.extraction_timeout,
                    )
                except asyncio.TimeoutError:
                    raise _SegmentFailure(index, StageTimeout(
                        f"Segment {index} extraction exceeded {self.extraction_timeout:.0f}s"
                    ))
                except Exception as e:
                    raise _SegmentFailure(index, e) from e

        tasks = [
            asyncio.create_task(extract(i, segment))
            for i, segment in enumerate(workflow_input.segments)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _stitch(self, workflow_input: ClipWorkflowInput, segment_keys: List[str]) -> StitchResult:
        try:
            return await asyncio.wait_for(
                self._with_retry(
                    self.stitcher.stitch,
                    workflow_input.tenant_id,
                    workflow_input.episode_id,
                    workflow_input.clip_id,
                    segment_keys,
                ),
                timeout=self.stitching_timeout,
            )
        except asyncio.TimeoutError:
            raise StageTimeout(f"Stitching exceeded {self.stitching_timeout:.0f}s")

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def _enter_in_progress(self, workflow_input: ClipWorkflowInput, attempt: int):
        entity_id = workflow_input.entity_id
        current = await self.ledger.current_status(entity_id)
        if current in INTERRUPTED_STATUSES:
            logger.warning(f"Clip {workflow_input.clip_id} was left in '{current}', closing it as failed")
            await self.ledger.append(
                entity_id,
                ClipStatus.FAILED,
                error=f"Run interrupted while {current}",
                errorType="Interrupted",
                stage=current,
            )

        await self.ledger.append(
            entity_id,
            ClipStatus.IN_PROGRESS,
            segmentCount=len(workflow_input.segments),
            attempt=attempt,
        )

    async def run(self, workflow_input: ClipWorkflowInput) -> ClipWorkflowResult:
        """
        Execute one workflow run for a clip.

        Raises:
            WorkflowFailed: After the failure has been recorded in status history
            InvalidStatusTransition: If the clip is already complete
        """
        if not workflow_input.segments:
            raise ValueError("Clip workflow requires at least one segment")

        started = time.monotonic()
        entity_id = workflow_input.entity_id
        clip_id = workflow_input.clip_id

        stage = STAGE_START
        already_complete = False
        try:
            await self.ensure_clip(workflow_input)
            if await self.ledger.current_status(entity_id) == ClipStatus.COMPLETE.value:
                already_complete = True
                raise InvalidStatusTransition(f"Clip {clip_id} is already complete")
            attempt = await self._increment_attempts(workflow_input)
            await self._enter_in_progress(workflow_input, attempt)

            stage = STAGE_EXTRACTION
            await self.ledger.append(entity_id, ClipStatus.SEGMENTS_EXTRACTING)
            materialized = await self._extract_segments(workflow_input)
            await self.ledger.append(
                entity_id,
                ClipStatus.SEGMENTS_COMPLETE,
                segmentCount=len(materialized),
            )

            stage = STAGE_STITCHING
            await self.ledger.append(entity_id, ClipStatus.STITCHING)
            stitched = await self._stitch(workflow_input, [m.key for m in materialized])

            stage = STAGE_FINALIZE
            processing_duration = round(time.monotonic() - started, 3)
            result = ClipWorkflowResult(
                clip_id=clip_id,
                clip_key=stitched.key,
                file_size=stitched.file_size,
                duration=stitched.duration,
                resolution=stitched.resolution,
                segment_count=len(materialized),
                processing_duration=processing_duration,
                segments=materialized,
                verification=stitched.verification.to_dict(),
                cleanup=stitched.cleanup.to_dict(),
            )
            await self._update_clip(
                workflow_input,
                s3_key=stitched.key,
                file_size=stitched.file_size,
                duration=stitched.duration,
                processing_metadata={
                    "segment_count": len(materialized),
                    "processing_duration": processing_duration,
                    "attempt": attempt,
                    **stitched.metadata.to_dict(),
                    "verification": result.verification,
                    "cleanup": result.cleanup,
                },
                processing_error=None,
                processed_at=datetime.utcnow(),
            )
            await self.ledger.append(
                entity_id,
                ClipStatus.COMPLETE,
                clipKey=stitched.key,
                duration=stitched.duration,
                processingDuration=processing_duration,
            )
        except asyncio.CancelledError:
            await self._record_failure(workflow_input, stage, "Run cancelled", "Cancelled", None, started)
            raise
        except Exception as e:
            if already_complete:
                raise
            segment_index = None
            cause = e
            if isinstance(e, _SegmentFailure):
                segment_index, cause = e.index, e.cause
            error_type = cause.kind if isinstance(cause, PodclipError) else type(cause).__name__
            logger.error(f"Clip {clip_id} failed during {stage}: {error_type}: {cause}")
            await self._record_failure(workflow_input, stage, str(cause), error_type, segment_index, started)
            raise WorkflowFailed(clip_id, stage, cause) from cause

        logger.info(
            f"Clip {clip_id} complete: {result.clip_key} "
            f"({result.duration:.2f}s, {result.segment_count} segments, {result.processing_duration:.1f}s)"
        )
        return result

    async def _record_failure(
        self,
        workflow_input: ClipWorkflowInput,
        stage: str,
        message: str,
        error_type: str,
        segment_index: Optional[int],
        started: float,
    ):
        processing_duration = round(time.monotonic() - started, 3)
        entity_id = workflow_input.entity_id
        # Recording is best effort; the caller re-raises the original error
        try:
            current = await self.ledger.current_status(entity_id)
            if current is None or current in (ClipStatus.FAILED.value, ClipStatus.COMPLETE.value):
                logger.warning(f"Clip {workflow_input.clip_id} is '{current}', not appending a failure entry")
            else:
                await self.ledger.append(
                    entity_id,
                    ClipStatus.FAILED,
                    error=message,
                    errorType=error_type,
                    stage=stage,
                    segmentIndex=segment_index,
                    processingDuration=processing_duration,
                )
            await self._update_clip(
                workflow_input,
                processing_error={
                    "message": message,
                    "errorType": error_type,
                    "stage": stage,
                    "segmentIndex": segment_index,
                    "timestamp": datetime.utcnow().isoformat() + "Z",
                },
            )
        except Exception:
            logger.exception(f"Could not record failure of clip {workflow_input.clip_id}")
