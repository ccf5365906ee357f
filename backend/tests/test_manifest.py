"""Tests for HLS manifest indexing and the manifest cache."""
import asyncio

import pytest

from conftest import EPISODE, TENANT, build_manifest, seed_track
from podclip.errors import MalformedManifest, ManifestNotFound
from podclip.pipeline.keys import manifest_key
from podclip.pipeline.manifest import ManifestCache, ManifestIndex, ManifestLoader, parse_manifest
from podclip.storage.local import LocalStorage


class _CountingStorage(LocalStorage):
    def __init__(self, root):
        super().__init__(root)
        self.reads = 0

    async def get_text(self, key, encoding="utf-8"):
        self.reads += 1
        await asyncio.sleep(0.01)
        return await super().get_text(key, encoding)


class TestParseManifest:
    """Tests for playlist parsing."""

    def test_cumulative_offsets(self):
        index = parse_manifest(build_manifest([10.0, 10.0, 5.5]), prefix="t/e/videos/main/chunks")

        assert index.chunk_count == 3
        assert [c.start for c in index.chunks] == [0.0, 10.0, 20.0]
        assert [c.end for c in index.chunks] == [10.0, 20.0, 25.5]
        assert index.total_duration == pytest.approx(25.5)
        assert index.chunks[0].key == "t/e/videos/main/chunks/chunk_000.ts"
        assert index.chunks[0].filename == "chunk_000.ts"

    def test_header_tags(self):
        index = parse_manifest(build_manifest([6.0, 6.0], media_sequence=7), prefix="p")

        assert index.version == 3
        assert index.target_duration == 6.0
        assert index.media_sequence == 7
        assert [c.sequence for c in index.chunks] == [7, 8]

    def test_adjacent_chunks_share_boundaries(self):
        index = parse_manifest(build_manifest([4.004, 4.004, 3.003, 4.004]), prefix="p")
        for prev, cur in zip(index.chunks, index.chunks[1:]):
            assert cur.start == prev.end

    def test_non_positive_durations_are_skipped(self):
        content = "\n".join([
            "#EXTM3U",
            "#EXTINF:10.0,",
            "a.ts",
            "#EXTINF:0,",
            "b.ts",
            "#EXTINF:-1,",
            "c.ts",
            "#EXTINF:5.0,",
            "d.ts",
        ])
        index = parse_manifest(content, prefix="")

        assert [c.filename for c in index.chunks] == ["a.ts", "d.ts"]
        assert index.chunks[1].start == 10.0
        assert index.chunks[1].key == "d.ts"

    def test_extinf_without_uri_is_skipped(self):
        content = "#EXTM3U\n#EXTINF:10.0,\n#EXTINF:5.0,\nb.ts\n"
        index = parse_manifest(content, prefix="p")
        assert [c.filename for c in index.chunks] == ["b.ts"]

    def test_missing_header(self):
        with pytest.raises(MalformedManifest):
            parse_manifest("#EXTINF:10.0,\na.ts\n", prefix="p")

    def test_no_chunks(self):
        with pytest.raises(MalformedManifest):
            parse_manifest("#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-ENDLIST\n", prefix="p")

    def test_empty_content(self):
        with pytest.raises(MalformedManifest):
            parse_manifest("   \n", prefix="p")

    def test_parsing_is_deterministic(self):
        content = build_manifest([10.0, 20.0])
        assert parse_manifest(content, prefix="p") == parse_manifest(content, prefix="p")


class TestManifestCache:
    """Tests for the LRU/TTL cache."""

    def _index(self, name):
        return ManifestIndex(episode_id="e", track_name=name)

    def test_get_put(self):
        cache = ManifestCache(max_entries=2, ttl_seconds=60)
        index = self._index("a")
        cache.put("a", index)
        assert cache.get("a") is index
        assert cache.get("missing") is None

    def test_least_recently_used_is_evicted(self):
        cache = ManifestCache(max_entries=2, ttl_seconds=60)
        cache.put("a", self._index("a"))
        cache.put("b", self._index("b"))
        cache.get("a")
        cache.put("c", self._index("c"))

        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert len(cache) == 2

    def test_entries_expire(self):
        now = [100.0]
        cache = ManifestCache(max_entries=4, ttl_seconds=10, clock=lambda: now[0])
        cache.put("a", self._index("a"))

        now[0] = 105.0
        assert cache.get("a") is not None
        now[0] = 111.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_disabled_cache(self):
        cache = ManifestCache(max_entries=0, ttl_seconds=60)
        cache.put("a", self._index("a"))
        assert cache.get("a") is None


class TestManifestLoader:
    """Tests for loading manifests from storage."""

    @pytest.mark.asyncio
    async def test_load_resolves_chunk_keys(self, storage):
        await seed_track(storage, durations=(30.0, 30.0))
        loader = ManifestLoader(storage, ManifestCache())

        index = await loader.load(TENANT, EPISODE, "main")

        prefix = manifest_key(TENANT, EPISODE, "main").rsplit("/", 1)[0]
        assert index.chunks[1].key == f"{prefix}/chunk_001.ts"
        assert index.track_name == "main"
        assert index.total_duration == 60.0

    @pytest.mark.asyncio
    async def test_load_uses_cache(self, storage):
        await seed_track(storage, durations=(30.0,))
        loader = ManifestLoader(storage, ManifestCache())
        first = await loader.load(TENANT, EPISODE, "main")

        await storage.put_text(manifest_key(TENANT, EPISODE, "main"), build_manifest([99.0]))
        second = await loader.load(TENANT, EPISODE, "main")

        assert second is first

    @pytest.mark.asyncio
    async def test_explicit_key(self, storage):
        await storage.put_text("custom/place/playlist.m3u8", build_manifest([12.0]))
        loader = ManifestLoader(storage, ManifestCache())

        index = await loader.load(TENANT, EPISODE, "main", key="custom/place/playlist.m3u8")

        assert index.chunks[0].key == "custom/place/chunk_000.ts"

    @pytest.mark.asyncio
    async def test_missing_manifest(self, storage):
        loader = ManifestLoader(storage, ManifestCache())
        with pytest.raises(ManifestNotFound):
            await loader.load(TENANT, EPISODE, "nope")

    @pytest.mark.asyncio
    async def test_concurrent_loads_read_once(self, tmp_path):
        storage = _CountingStorage(tmp_path / "store")
        await seed_track(storage, durations=(30.0, 30.0))
        loader = ManifestLoader(storage, ManifestCache())

        results = await asyncio.gather(*(loader.load(TENANT, EPISODE, "main") for _ in range(5)))

        assert storage.reads == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_load_locks_are_released(self, storage):
        await seed_track(storage, durations=(30.0,))
        loader = ManifestLoader(storage, ManifestCache(max_entries=1))

        await loader.load(TENANT, EPISODE, "main")
        with pytest.raises(ManifestNotFound):
            await loader.load(TENANT, EPISODE, "nope")

        assert loader._locks == {}
        assert loader._lock_users == {}
