"""Workflow run model for tracking clip workflow executions."""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from podclip.db.database import Base


class RunStatus(str, enum.Enum):
    """Workflow run status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowRun(Base):
    """One execution of the clip workflow."""

    __tablename__ = "workflow_runs"

    id = Column(Integer, primary_key=True, index=True)
    clip_pk = Column(Integer, ForeignKey("clips.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False)
    attempt = Column(Integer, default=1, nullable=False)
    message = Column(String(1024), nullable=True)

    # Results/errors
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    clip = relationship("Clip")

    def __repr__(self):
        return f"<WorkflowRun(id={self.id}, clip={self.clip_pk}, status={self.status})>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "clip_pk": self.clip_pk,
            "status": self.status.value,
            "attempt": self.attempt,
            "message": self.message,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
