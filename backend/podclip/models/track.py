"""Track model."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from podclip.db.database import Base


class Track(Base):
    """A recorded track of an episode (one camera / speaker feed)."""

    __tablename__ = "tracks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "episode_id", "track_name", name="uq_track_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(128), nullable=False, index=True)
    episode_id = Column(String(128), nullable=False, index=True)
    track_name = Column(String(255), nullable=False)

    # Speakers recorded on this track, matched case-sensitively
    speakers = Column(JSON, nullable=False, default=list)

    # Explicit manifest location; derived from the track name when empty
    manifest_key = Column(String(1024), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Track(episode={self.episode_id}, name='{self.track_name}')>"

    def to_dict(self):
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "episode_id": self.episode_id,
            "track_name": self.track_name,
            "speakers": list(self.speakers or []),
            "manifest_key": self.manifest_key,
        }
