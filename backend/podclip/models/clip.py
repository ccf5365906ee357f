"""Clip model."""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, Float, JSON, UniqueConstraint

from podclip.db.database import Base


class ClipStatus(str, enum.Enum):
    """Clip workflow status enumeration."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SEGMENTS_EXTRACTING = "segments_extracting"
    SEGMENTS_COMPLETE = "segments_complete"
    STITCHING = "stitching"
    COMPLETE = "complete"
    FAILED = "failed"


CLIP_STATUS_TRANSITIONS = {
    ClipStatus.PENDING: {ClipStatus.IN_PROGRESS, ClipStatus.FAILED},
    ClipStatus.IN_PROGRESS: {ClipStatus.SEGMENTS_EXTRACTING, ClipStatus.FAILED},
    ClipStatus.SEGMENTS_EXTRACTING: {ClipStatus.SEGMENTS_COMPLETE, ClipStatus.FAILED},
    ClipStatus.SEGMENTS_COMPLETE: {ClipStatus.STITCHING, ClipStatus.FAILED},
    ClipStatus.STITCHING: {ClipStatus.COMPLETE, ClipStatus.FAILED},
    ClipStatus.COMPLETE: set(),
    # Resubmission
    ClipStatus.FAILED: {ClipStatus.PENDING, ClipStatus.IN_PROGRESS},
}


ENTITY_SEPARATOR = "#"


def clip_entity_id(tenant_id: str, episode_id: str, clip_id: str) -> str:
    """
    Status history entity id of a clip.

    Raises:
        ValueError: If a component contains the separator, which would make
            two different clips share one history
    """
    parts = (tenant_id, episode_id, clip_id)
    if any(ENTITY_SEPARATOR in (part or "") for part in parts):
        raise ValueError(f"Clip ids must not contain '{ENTITY_SEPARATOR}': {parts}")
    return ENTITY_SEPARATOR.join(parts)


def _default_entity_id(context) -> str:
    params = context.get_current_parameters()
    return clip_entity_id(params["tenant_id"], params["episode_id"], params["clip_id"])


class Clip(Base):
    """A requested highlight clip and the outcome of its workflow."""

    __tablename__ = "clips"
    __table_args__ = (
        UniqueConstraint("tenant_id", "episode_id", "clip_id", name="uq_clip"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(128), nullable=False, index=True)
    episode_id = Column(String(128), nullable=False, index=True)
    clip_id = Column(String(128), nullable=False)
    # Status history key; the ledger updates the row through it
    entity_id = Column(String(400), nullable=False, unique=True, default=_default_entity_id)

    # Ordered logical segments as received at the boundary
    segments = Column(JSON, nullable=False, default=list)
    # Explicit track requested by the event, overrides speaker resolution
    track_name = Column(String(128), nullable=True)

    # Denormalized last status history entry
    status = Column(Enum(ClipStatus), default=ClipStatus.PENDING, nullable=False)

    # Workflow output
    s3_key = Column(String(1024), nullable=True)
    file_size = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    processing_metadata = Column(JSON, nullable=True)
    processing_error = Column(JSON, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    # Incremented atomically each time a run starts
    attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Clip(id={self.clip_id}, episode={self.episode_id}, status={self.status})>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "tenant_id": self.tenant_id,
            "episode_id": self.episode_id,
            "clip_id": self.clip_id,
            "segments": self.segments or [],
            "track_name": self.track_name,
            "status": self.status.value if self.status else None,
            "s3_key": self.s3_key,
            "file_size": self.file_size,
            "duration": self.duration,
            "processing_metadata": self.processing_metadata,
            "processing_error": self.processing_error,
            "attempts": self.attempts,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
