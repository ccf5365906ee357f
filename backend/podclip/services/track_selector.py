"""Resolve which track a speaker was recorded on."""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select

from podclip.config import settings
from podclip.db.database import async_session_maker
from podclip.models.track import Track

logger = logging.getLogger(__name__)


@dataclass
class TrackSelection:
    """Per-speaker resolution result."""
    matches: Dict[str, Optional[Track]] = field(default_factory=dict)
    unmatched: List[str] = field(default_factory=list)

    def track_name_for(self, speaker: str) -> Optional[str]:
        track = self.matches.get(speaker)
        return track.track_name if track else None


def find_track_for_speaker(tracks: Sequence[Track], speaker: str) -> Optional[Track]:
    """First track whose speaker list contains ``speaker`` exactly."""
    for track in tracks:
        if speaker in (track.speakers or []):
            return track
    return None


class TrackSelector:
    """Speaker to track lookups against the track registry."""

    def __init__(self, session_maker=None):
        self.session_maker = session_maker or async_session_maker

    async def list_tracks(self, tenant_id: str, episode_id: str) -> List[Track]:
        """Registered tracks of an episode, in name order."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Track)
                .where(Track.tenant_id == tenant_id, Track.episode_id == episode_id)
                .order_by(Track.track_name)
                .limit(settings.max_tracks_per_episode)
            )
            return [t for t in result.scalars().all() if t.track_name]

    async def get_track(self, tenant_id: str, episode_id: str, track_name: str) -> Optional[Track]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Track).where(
                    Track.tenant_id == tenant_id,
                    Track.episode_id == episode_id,
                    Track.track_name == track_name,
                )
            )
            return result.scalar_one_or_none()

    async def select_track(self, tenant_id: str, episode_id: str, speaker: str) -> Optional[Track]:
        """
        Find the track containing a speaker.

        Returns:
            The first matching track, or None when nothing matches
        """
        tracks = await self.list_tracks(tenant_id, episode_id)
        if not tracks:
            logger.error(f"No tracks found for episode '{episode_id}'")
            return None
        return find_track_for_speaker(tracks, speaker)

    async def select_tracks(
        self,
        tenant_id: str,
        episode_id: str,
        speakers: Sequence[str],
    ) -> TrackSelection:
        """Resolve several speakers independently."""
        tracks = await self.list_tracks(tenant_id, episode_id)
        selection = TrackSelection()
        for speaker in speakers:
            track = find_track_for_speaker(tracks, speaker)
            selection.matches[speaker] = track
            if track is None:
                selection.unmatched.append(speaker)

        if selection.unmatched:
            logger.info(
                f"Unmatched speakers for episode '{episode_id}': {', '.join(selection.unmatched)}"
            )
        return selection

    async def upsert_track(
        self,
        tenant_id: str,
        episode_id: str,
        track_name: str,
        speakers: Sequence[str],
        manifest_key: Optional[str] = None,
    ) -> Track:
        """Register a track or replace its speakers and manifest key."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Track).where(
                    Track.tenant_id == tenant_id,
                    Track.episode_id == episode_id,
                    Track.track_name == track_name,
                )
            )
            track = result.scalar_one_or_none()
            if track is None:
                track = Track(tenant_id=tenant_id, episode_id=episode_id, track_name=track_name)
                session.add(track)
            track.speakers = list(speakers)
            track.manifest_key = manifest_key
            await session.commit()
            await session.refresh(track)
            return track
