"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from podclip.errors import InvalidSegment, InvalidTimecode
from podclip.pipeline.chunk_mapper import LogicalSegment
from podclip.workers.clip_workflow import ClipWorkflowInput


# Ids become storage key and status history key components
ID_PATTERN = r"^[A-Za-z0-9._-]+$"


class CamelModel(BaseModel):
    """Accepts camelCase field names from event payloads as well as snake_case."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Workflow Event Schemas
# =============================================================================

class SegmentSchema(CamelModel):
    """One requested time range of a clip."""
    start_time: Union[str, float] = Field(..., alias="startTime", description="HH:MM:SS, MM:SS or seconds")
    end_time: Union[str, float] = Field(..., alias="endTime", description="HH:MM:SS, MM:SS or seconds")
    order: int = Field(..., ge=1, description="Position of the segment in the stitched clip")
    speaker: Optional[str] = None
    notes: Optional[str] = None

    def to_logical_segment(self) -> LogicalSegment:
        return LogicalSegment.from_times(
            self.start_time,
            self.end_time,
            order=self.order,
            speaker=self.speaker,
            notes=self.notes,
        )

    @model_validator(mode="after")
    def check_timing(self):
        try:
            self.to_logical_segment()
        except (InvalidTimecode, InvalidSegment) as e:
            raise ValueError(str(e))
        return self


class ClipWorkflowEvent(CamelModel):
    """Event that starts a clip workflow."""
    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=128, pattern=ID_PATTERN)
    episode_id: str = Field(..., alias="episodeId", min_length=1, max_length=128, pattern=ID_PATTERN)
    clip_id: str = Field(..., alias="clipId", min_length=1, max_length=128, pattern=ID_PATTERN)
    segments: List[SegmentSchema] = Field(..., min_length=1)
    track_name: Optional[str] = Field(None, alias="trackName", max_length=128, pattern=ID_PATTERN)

    @field_validator("segments")
    @classmethod
    def unique_order(cls, segments: List[SegmentSchema]) -> List[SegmentSchema]:
        orders = [s.order for s in segments]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Segment order values must be unique: {orders}")
        return segments

    def to_workflow_input(self) -> ClipWorkflowInput:
        """Convert to the workflow input with segments in stitch order."""
        ordered = sorted(self.segments, key=lambda s: s.order)
        return ClipWorkflowInput(
            tenant_id=self.tenant_id,
            episode_id=self.episode_id,
            clip_id=self.clip_id,
            segments=[s.to_logical_segment() for s in ordered],
            track_name=self.track_name,
        )


class ClipGenerationRequest(CamelModel):
    """Request to start workflows for every pending clip of an episode."""
    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=128, pattern=ID_PATTERN)


class ClipGenerationResponse(BaseModel):
    """Summary of a clip generation trigger."""
    total: int
    started: int
    failed: int
    executions: List[Dict[str, Any]]


# =============================================================================
# Track Schemas
# =============================================================================

class TrackUpsert(CamelModel):
    """Register or update a track of an episode."""
    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=128, pattern=ID_PATTERN)
    track_name: str = Field(..., alias="trackName", min_length=1, max_length=128, pattern=ID_PATTERN)
    speakers: List[str] = Field(default_factory=list)
    manifest_key: Optional[str] = Field(None, alias="manifestKey")


class TrackResponse(BaseModel):
    """Track response."""
    id: int
    tenant_id: str
    episode_id: str
    track_name: str
    speakers: List[str]
    manifest_key: Optional[str]

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Clip / Run Schemas
# =============================================================================

class ClipResponse(BaseModel):
    """Clip record with its status history."""
    tenant_id: str
    episode_id: str
    clip_id: str
    segments: List[Dict[str, Any]]
    track_name: Optional[str] = None
    status: str
    s3_key: Optional[str]
    file_size: Optional[int]
    duration: Optional[float]
    processing_metadata: Optional[Dict[str, Any]]
    processing_error: Optional[Dict[str, Any]]
    attempts: int
    processed_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    status_history: List[Dict[str, Any]] = Field(default_factory=list)


class WorkflowRunResponse(BaseModel):
    """Workflow run response."""
    id: int
    clip_pk: int
    status: str
    attempt: int
    message: Optional[str]
    result: Optional[Dict[str, Any]]
    error: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Health Check
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    storage_backend: str
    message: Optional[str] = None
