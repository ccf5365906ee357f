"""Status history entry model."""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from podclip.db.database import Base


class StatusEntry(Base):
    """
    One row of an entity's append-only status history.

    Rows are only ever inserted. ``seq`` orders an entity's entries and is
    unique per entity, so two concurrent appends cannot both win the same
    position.
    """

    __tablename__ = "status_history"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "seq", name="uq_status_seq"),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(512), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    status = Column(String(64), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    context = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<StatusEntry({self.entity_type}:{self.entity_id} #{self.seq} {self.status})>"
