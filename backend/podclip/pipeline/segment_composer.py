"""Materialize one logical segment as a single stored media file.

The destination key is a pure function of (tenant, episode, clip, index).
An existing object at that key is returned as-is, which makes retries after
a partial run safe without any locking.
"""
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from podclip.config import settings
from podclip.errors import StorageIntegrityError, TranscodeFailed
from podclip.pipeline.chunk_mapper import (
    ChunkMapping,
    LogicalSegment,
    map_segment_to_chunks,
    total_mapped_duration,
)
from podclip.pipeline.keys import segment_key
from podclip.pipeline.manifest import ManifestLoader
from podclip.services.track_selector import TrackSelector
from podclip.storage.base import ObjectStorage
from podclip.utils.ffmpeg import FFmpegError, Transcoder, check_concat_compatible, transcoder as default_transcoder

logger = logging.getLogger(__name__)


@dataclass
class SegmentRequest:
    """Input of one composer invocation."""
    tenant_id: str
    episode_id: str
    clip_id: str
    index: int
    segment: LogicalSegment
    track_name: Optional[str] = None


@dataclass
class MaterializedSegment:
    """A stored segment file and what it contains."""
    key: str
    index: int
    duration: float
    file_size: int
    resolution: str
    extraction_type: str
    track_name: Optional[str] = None
    source_chunks: List[str] = field(default_factory=list)
    reused: bool = False

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "index": self.index,
            "duration": self.duration,
            "file_size": self.file_size,
            "resolution": self.resolution,
            "extraction_type": self.extraction_type,
            "track_name": self.track_name,
            "source_chunks": self.source_chunks,
            "reused": self.reused,
        }


def _chunk_suffix(mapping: ChunkMapping) -> str:
    return Path(mapping.filename).suffix or ".ts"


class SegmentComposer:
    """Turns a logical segment into a materialized segment object."""

    def __init__(
        self,
        storage: ObjectStorage,
        manifest_loader: Optional[ManifestLoader] = None,
        track_selector: Optional[TrackSelector] = None,
        transcoder: Optional[Transcoder] = None,
        work_dir: Optional[Path] = None,
    ):
        self.storage = storage
        self.manifest_loader = manifest_loader or ManifestLoader(storage)
        self.track_selector = track_selector or TrackSelector()
        self.transcoder = transcoder or default_transcoder
        self.work_dir = Path(work_dir or settings.work_dir)

    async def resolve_track(self, request: SegmentRequest) -> Tuple[str, Optional[str]]:
        """
        Pick the track to cut from.

        Returns:
            (track name, registered manifest key or None)
        """
        if request.track_name:
            track = await self.track_selector.get_track(
                request.tenant_id, request.episode_id, request.track_name
            )
            return request.track_name, track.manifest_key if track else None

        speaker = request.segment.speaker
        if speaker:
            try:
                track = await self.track_selector.select_track(
                    request.tenant_id, request.episode_id, speaker
                )
            except Exception as e:
                logger.warning(
                    f"Failed to find track for speaker '{speaker}', using default: {e}"
                )
            else:
                if track is not None:
                    logger.info(f"Using track '{track.track_name}' for speaker '{speaker}'")
                    return track.track_name, track.manifest_key
                logger.warning(
                    f"No track registered for speaker '{speaker}', using default '{settings.default_track}'"
                )

        return settings.default_track, None

    async def compose(self, request: SegmentRequest) -> MaterializedSegment:
        """
        Materialize one logical segment.

        Raises:
            NoMatchingChunks: If the segment lies outside the track
            TranscodeFailed: If extraction or concatenation fails
            StorageError: On storage failures or integrity mismatch
        """
        track_name, manifest_key = await self.resolve_track(request)
        manifest = await self.manifest_loader.load(
            request.tenant_id, request.episode_id, track_name, key=manifest_key
        )
        mappings = map_segment_to_chunks(request.segment, manifest.chunks)
        key = segment_key(request.tenant_id, request.episode_id, request.clip_id, request.index)

        existing = await self._existing_segment(key, request.index, track_name)
        if existing is not None:
            logger.info(f"Segment {key} already exists, skipping extraction")
            return existing

        prefix = f"segment-{request.clip_id}-{request.index:03d}-"
        with tempfile.TemporaryDirectory(prefix=prefix, dir=self.work_dir) as tmp:
            tmp_dir = Path(tmp)
            output = tmp_dir / f"segment_{request.index:03d}.mp4"

            if len(mappings) == 1:
                metadata = await self._extract_single(mappings[0], output, tmp_dir)
            else:
                metadata = await self._extract_multi(mappings, output, tmp_dir)

            info = await self.transcoder.verify_output(output)
            duration = info.duration or total_mapped_duration(mappings)
            metadata.update({
                "episode-id": request.episode_id,
                "clip-id": request.clip_id,
                "segment-index": str(request.index),
                "track": track_name,
                "duration": f"{duration:.3f}",
                "requested-duration": f"{request.segment.duration:.3f}",
                "resolution": info.resolution,
            })

            local_size = output.stat().st_size
            await self.storage.upload_file(key, output, metadata=metadata)
            await self._verify_upload(key, local_size)

        logger.info(
            f"Materialized segment {key} from {len(mappings)} chunk(s): "
            f"{duration:.2f}s, {local_size} bytes"
        )
        return MaterializedSegment(
            key=key,
            index=request.index,
            duration=duration,
            file_size=local_size,
            resolution=info.resolution,
            extraction_type=metadata["extraction-type"],
            track_name=track_name,
            source_chunks=[m.filename for m in mappings],
        )

    async def _existing_segment(self, key: str, index: int, track_name: str) -> Optional[MaterializedSegment]:
        if not await self.storage.exists(key):
            return None
        head = await self.storage.head(key)
        meta = head.metadata
        try:
            duration = float(meta.get("duration") or meta.get("total-duration") or 0)
        except ValueError:
            duration = 0.0
        # An object without its upload metadata was never completely written
        if head.size <= 0 or duration <= 0:
            logger.warning(f"Segment {key} exists without usable metadata, extracting again")
            return None
        chunks = meta.get("source-chunks") or meta.get("source-chunk") or ""
        return MaterializedSegment(
            key=key,
            index=index,
            duration=duration,
            file_size=head.size,
            resolution=meta.get("resolution", "0x0"),
            extraction_type=meta.get("extraction-type", "unknown"),
            track_name=meta.get("track", track_name),
            source_chunks=[c for c in chunks.split(",") if c],
            reused=True,
        )

    async def _extract_single(self, mapping: ChunkMapping, output: Path, tmp_dir: Path) -> dict:
        chunk_path = tmp_dir / f"chunk_000{_chunk_suffix(mapping)}"
        await self.storage.download_file(mapping.key, chunk_path)
        mode = await self.transcoder.extract_range(
            chunk_path, output, mapping.start_offset, mapping.duration
        )
        chunk_path.unlink(missing_ok=True)
        return {
            "extraction-type": "single-chunk",
            "extraction-mode": mode,
            "source-chunk": mapping.filename,
            "start-offset": f"{mapping.start_offset:.3f}",
            "end-offset": f"{mapping.end_offset:.3f}",
        }

    async def _extract_multi(self, mappings: List[ChunkMapping], output: Path, tmp_dir: Path) -> dict:
        parts = []
        modes = []
        for i, mapping in enumerate(mappings):
            chunk_path = tmp_dir / f"chunk_{i:03d}{_chunk_suffix(mapping)}"
            part_path = tmp_dir / f"part_{i:03d}.mp4"
            await self.storage.download_file(mapping.key, chunk_path)
            modes.append(await self.transcoder.extract_range(
                chunk_path, part_path, mapping.start_offset, mapping.duration
            ))
            chunk_path.unlink(missing_ok=True)
            parts.append(part_path)

        try:
            infos = [await self.transcoder.probe(p) for p in parts]
        except FFmpegError as e:
            raise TranscodeFailed(f"Could not probe extracted parts: {e}")

        mismatches = check_concat_compatible(infos)
        if mismatches:
            logger.warning(f"Parts are not stream-copy compatible, re-encoding on concat: {'; '.join(mismatches)}")
        await self.transcoder.concat(parts, output, reencode=bool(mismatches))

        return {
            "extraction-type": "multi-chunk",
            "extraction-mode": ",".join(modes),
            "source-chunks": ",".join(m.filename for m in mappings),
            "chunk-count": str(len(mappings)),
            "start-offset": f"{mappings[0].start_offset:.3f}",
            "end-offset": f"{mappings[-1].end_offset:.3f}",
            "total-duration": f"{total_mapped_duration(mappings):.3f}",
        }

    async def _verify_upload(self, key: str, expected_size: int):
        head = await self.storage.head(key)
        if head.size != expected_size:
            logger.error(f"Size mismatch for {key}: expected {expected_size}, got {head.size}")
            await self.storage.delete_objects([key])
            raise StorageIntegrityError(
                f"Uploaded segment {key} is {head.size} bytes, expected {expected_size}"
            )
