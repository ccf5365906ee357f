"""HLS manifest indexing.

Turns a media playlist into an ordered list of chunk descriptors with
cumulative offsets on the track timeline, and loads manifests from object
storage through an explicit, injected cache.
"""
import asyncio
import logging
import posixpath
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from podclip.config import settings
from podclip.errors import MalformedManifest, ManifestNotFound, ObjectNotFound
from podclip.pipeline.keys import manifest_key
from podclip.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

EXTINF_RE = re.compile(r"^#EXTINF:\s*([-+]?[\d.]+)")


@dataclass(frozen=True)
class ChunkDescriptor:
    """One physical chunk file on the track timeline."""
    key: str
    filename: str
    sequence: int
    duration: float
    start: float
    end: float


@dataclass
class ManifestIndex:
    """Parsed media playlist."""
    episode_id: str
    track_name: str
    chunks: List[ChunkDescriptor] = field(default_factory=list)
    version: Optional[int] = None
    target_duration: Optional[float] = None
    media_sequence: int = 0

    @property
    def total_duration(self) -> float:
        return self.chunks[-1].end if self.chunks else 0.0

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)


def _tag_value(line: str) -> str:
    return line.split(":", 1)[1].strip()


def parse_manifest(
    content: str,
    prefix: str,
    episode_id: str = "",
    track_name: str = "",
) -> ManifestIndex:
    """
    Parse HLS playlist text into a ManifestIndex.

    Args:
        content: Raw playlist text
        prefix: Storage prefix that chunk URIs are resolved against
        episode_id: Episode the track belongs to
        track_name: Track the manifest describes

    Returns:
        ManifestIndex with chunks ordered by sequence

    Raises:
        MalformedManifest: If the header is missing or no chunk survives
    """
    if not isinstance(content, str) or not content.strip():
        raise MalformedManifest("Invalid manifest content: must be a non-empty string")

    lines = [line.strip() for line in content.splitlines() if line.strip()]
    if not lines[0].startswith("#EXTM3U"):
        raise MalformedManifest("Invalid M3U8 format: missing #EXTM3U header")

    index = ManifestIndex(episode_id=episode_id, track_name=track_name)
    prefix = prefix.rstrip("/")
    entries = []

    for i, line in enumerate(lines):
        if line.startswith("#EXT-X-VERSION:"):
            try:
                index.version = int(_tag_value(line))
            except ValueError:
                logger.warning(f"Ignoring unparsable version tag: {line}")
        elif line.startswith("#EXT-X-TARGETDURATION:"):
            try:
                index.target_duration = float(_tag_value(line))
            except ValueError:
                logger.warning(f"Ignoring unparsable target duration tag: {line}")
        elif line.startswith("#EXT-X-MEDIA-SEQUENCE:"):
            try:
                index.media_sequence = int(_tag_value(line))
            except ValueError:
                logger.warning(f"Ignoring unparsable media sequence tag: {line}")
        elif line.startswith("#EXTINF:"):
            match = EXTINF_RE.match(line)
            if not match:
                logger.warning(f"Invalid #EXTINF format at line {i}: {line}")
                continue

            try:
                duration = float(match.group(1))
            except ValueError:
                logger.warning(f"Invalid #EXTINF duration at line {i}: {line}")
                continue

            next_line = lines[i + 1] if i + 1 < len(lines) else None
            if next_line is None or next_line.startswith("#"):
                logger.warning(f"Missing segment filename after #EXTINF at line {i}")
                continue

            if duration <= 0:
                logger.warning(f"Skipping segment with non-positive duration {duration} at line {i}")
                continue

            entries.append((next_line, duration))

    current = 0.0
    for offset, (filename, duration) in enumerate(entries):
        key = filename if not prefix else f"{prefix}/{filename}"
        index.chunks.append(ChunkDescriptor(
            key=key,
            filename=filename,
            sequence=index.media_sequence + offset,
            duration=duration,
            start=current,
            end=current + duration,
        ))
        current += duration

    if not index.chunks:
        raise MalformedManifest("No valid segments found in manifest")

    return index


class ManifestCache:
    """
    LRU cache of parsed manifests with a time-to-live.

    Entries are keyed by manifest storage key. Parsed manifests are
    immutable, so sharing them between concurrent segment runs is safe.
    """

    def __init__(
        self,
        max_entries: int = None,
        ttl_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries if max_entries is not None else settings.manifest_cache_size
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.manifest_cache_ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, ManifestIndex]]" = OrderedDict()

    def get(self, key: str) -> Optional[ManifestIndex]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, index = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return index

    def put(self, key: str, index: ManifestIndex):
        if self.max_entries <= 0:
            return
        self._entries[key] = (self._clock(), index)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class ManifestLoader:
    """Loads track manifests from storage, consulting a ManifestCache."""

    def __init__(self, storage: ObjectStorage, cache: Optional[ManifestCache] = None):
        self.storage = storage
        self.cache = cache if cache is not None else ManifestCache()
        # Per-key load locks, dropped once no load is waiting on them
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def load(
        self,
        tenant_id: str,
        episode_id: str,
        track_name: str,
        key: Optional[str] = None,
    ) -> ManifestIndex:
        """
        Load and parse a track manifest.

        Args:
            tenant_id: Tenant namespace
            episode_id: Episode ID
            track_name: Track name
            key: Explicit manifest key from the track registry

        Raises:
            ManifestNotFound: If the manifest object does not exist
            MalformedManifest: If the manifest cannot be parsed
        """
        key = key or manifest_key(tenant_id, episode_id, track_name)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                cached = self.cache.get(key)
                if cached is not None:
                    return cached
                return await self._read_and_index(key, episode_id, track_name)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _read_and_index(self, key: str, episode_id: str, track_name: str) -> ManifestIndex:
        try:
            content = await self.storage.get_text(key)
        except ObjectNotFound:
            raise ManifestNotFound(f"HLS manifest not found: {key}")

        if not content.strip():
            raise MalformedManifest(f"Empty manifest content: {key}")

        index = parse_manifest(
            content,
            prefix=posixpath.dirname(key),
            episode_id=episode_id,
            track_name=track_name,
        )
        logger.info(
            f"Indexed manifest {key}: {index.chunk_count} chunks, "
            f"{index.total_duration:.2f}s"
        )
        self.cache.put(key, index)
        return index
