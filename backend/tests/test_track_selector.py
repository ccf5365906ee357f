"""Tests for speaker to track resolution."""
import pytest

from conftest import EPISODE, TENANT
from podclip.config import settings
from podclip.models.track import Track
from podclip.services.track_selector import TrackSelector, find_track_for_speaker


def test_find_track_for_speaker_is_exact():
    tracks = [
        Track(track_name="a", speakers=["Alice Smith"]),
        Track(track_name="b", speakers=["Bob"]),
    ]
    assert find_track_for_speaker(tracks, "Bob").track_name == "b"
    assert find_track_for_speaker(tracks, "Alice") is None
    assert find_track_for_speaker(tracks, "bob") is None


class TestTrackSelector:
    """Tests against the track registry."""

    @pytest.mark.asyncio
    async def test_select_track(self, session_maker):
        selector = TrackSelector(session_maker)
        await selector.upsert_track(TENANT, EPISODE, "cam-b", ["Bob"])
        await selector.upsert_track(TENANT, EPISODE, "cam-a", ["Alice", "Bob"])

        track = await selector.select_track(TENANT, EPISODE, "Bob")

        # First in name order wins
        assert track.track_name == "cam-a"

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self, session_maker):
        selector = TrackSelector(session_maker)
        await selector.upsert_track(TENANT, EPISODE, "cam-a", ["Alice"])

        assert await selector.select_track(TENANT, EPISODE, "Carol") is None

    @pytest.mark.asyncio
    async def test_episode_without_tracks(self, session_maker):
        selector = TrackSelector(session_maker)
        assert await selector.select_track(TENANT, "other-episode", "Alice") is None

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, session_maker):
        selector = TrackSelector(session_maker)
        await selector.upsert_track("tenant-2", EPISODE, "cam-a", ["Alice"])

        assert await selector.select_track(TENANT, EPISODE, "Alice") is None

    @pytest.mark.asyncio
    async def test_select_tracks_reports_unmatched(self, session_maker):
        selector = TrackSelector(session_maker)
        await selector.upsert_track(TENANT, EPISODE, "cam-a", ["Alice"])
        await selector.upsert_track(TENANT, EPISODE, "cam-b", ["Bob"])

        selection = await selector.select_tracks(TENANT, EPISODE, ["Alice", "Bob", "Carol"])

        assert selection.track_name_for("Alice") == "cam-a"
        assert selection.track_name_for("Bob") == "cam-b"
        assert selection.track_name_for("Carol") is None
        assert selection.unmatched == ["Carol"]

    @pytest.mark.asyncio
    async def test_upsert_replaces_speakers(self, session_maker):
        selector = TrackSelector(session_maker)
        await selector.upsert_track(TENANT, EPISODE, "cam-a", ["Alice"])
        await selector.upsert_track(TENANT, EPISODE, "cam-a", ["Dave"], manifest_key="x/y.m3u8")

        tracks = await selector.list_tracks(TENANT, EPISODE)

        assert len(tracks) == 1
        assert tracks[0].speakers == ["Dave"]
        assert tracks[0].manifest_key == "x/y.m3u8"

    @pytest.mark.asyncio
    async def test_list_is_capped(self, session_maker, monkeypatch):
        monkeypatch.setattr(settings, "max_tracks_per_episode", 2)
        selector = TrackSelector(session_maker)
        for name in ("c", "a", "b"):
            await selector.upsert_track(TENANT, EPISODE, name, [])

        tracks = await selector.list_tracks(TENANT, EPISODE)

        assert [t.track_name for t in tracks] == ["a", "b"]
