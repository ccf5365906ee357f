"""Map logical segments onto physical chunks.

Intervals are half-open, ``[start, end)``. A boundary that lands exactly
on a chunk edge belongs to the later chunk, so a segment starting at 120s
over chunks ``[0, 120)`` and ``[120, 240)`` touches only the second one.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from podclip.config import settings
from podclip.errors import InvalidSegment, NoMatchingChunks
from podclip.pipeline.manifest import ChunkDescriptor
from podclip.utils.timecode import TimeValue, seconds_to_time, time_to_seconds

logger = logging.getLogger(__name__)

# Overlaps shorter than this are float drift from summed EXTINF durations
MIN_OVERLAP_SECONDS = 1e-6


@dataclass(frozen=True)
class LogicalSegment:
    """Caller-requested time range of a clip, in seconds."""
    start: float
    end: float
    order: int = 1
    speaker: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not (math.isfinite(self.start) and math.isfinite(self.end)):
            raise InvalidSegment("Segment times must be finite")
        if self.start < 0 or self.end < 0:
            raise InvalidSegment("Segment times must be non-negative")
        if self.start >= self.end:
            raise InvalidSegment(
                f"Invalid segment timing: start ({self.start}s) must be before end ({self.end}s)"
            )
        if self.order < 1:
            raise InvalidSegment(f"Segment order must be a positive integer: {self.order}")

    @property
    def duration(self) -> float:
        return self.end - self.start

    @classmethod
    def from_times(
        cls,
        start_time: TimeValue,
        end_time: TimeValue,
        order: int = 1,
        speaker: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> "LogicalSegment":
        """Build a segment from time strings such as ``"00:01:30"``."""
        return cls(
            start=time_to_seconds(start_time),
            end=time_to_seconds(end_time),
            order=order,
            speaker=speaker,
            notes=notes,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "LogicalSegment":
        """Accepts stored ``start``/``end`` seconds or ``startTime``/``endTime`` strings."""
        start = data.get("start", data.get("startTime"))
        end = data.get("end", data.get("endTime"))
        if start is None or end is None:
            raise InvalidSegment("Segment must have startTime and endTime")
        return cls.from_times(
            start,
            end,
            order=int(data.get("order", 1)),
            speaker=data.get("speaker"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "startTime": seconds_to_time(self.start),
            "endTime": seconds_to_time(self.end),
            "order": self.order,
            "speaker": self.speaker,
            "notes": self.notes,
        }

    def describe(self) -> str:
        return f"{seconds_to_time(self.start)}-{seconds_to_time(self.end)}"


@dataclass(frozen=True)
class ChunkMapping:
    """Extraction instruction for one chunk."""
    key: str
    filename: str
    sequence: int
    start_offset: float
    end_offset: float
    duration: float
    chunk_start: float
    chunk_end: float


def map_segment_to_chunks(
    segment: LogicalSegment,
    chunks: Sequence[ChunkDescriptor],
    tolerance: float = None,
) -> List[ChunkMapping]:
    """
    Compute per-chunk extraction instructions reconstructing a segment.

    Args:
        segment: Requested interval in track seconds
        chunks: Chunk descriptors ordered by sequence
        tolerance: Allowed drift between mapped and requested duration

    Returns:
        Mappings in chunk order

    Raises:
        NoMatchingChunks: If no chunk overlaps the segment
    """
    if tolerance is None:
        tolerance = settings.duration_tolerance_seconds

    start, end = segment.start, segment.end
    mappings = []

    for chunk in chunks:
        if not (chunk.start < end and chunk.end > start):
            continue

        start_offset = max(0.0, start - chunk.start)
        end_offset = min(chunk.duration, end - chunk.start)
        duration = end_offset - start_offset
        if duration < MIN_OVERLAP_SECONDS:
            continue

        mappings.append(ChunkMapping(
            key=chunk.key,
            filename=chunk.filename,
            sequence=chunk.sequence,
            start_offset=start_offset,
            end_offset=end_offset,
            duration=duration,
            chunk_start=chunk.start,
            chunk_end=chunk.end,
        ))

    if not mappings:
        available = chunks[-1].end if chunks else 0.0
        raise NoMatchingChunks(
            f"No chunks found for segment {segment.describe()} "
            f"({start:.3f}s-{end:.3f}s). Available range: 0 - {available:.3f}s"
        )

    mapped = total_mapped_duration(mappings)
    if abs(mapped - segment.duration) > tolerance:
        logger.warning(
            f"Duration mismatch for segment {segment.describe()}: "
            f"expected {segment.duration:.3f}s, mapped {mapped:.3f}s"
        )

    return mappings


def total_mapped_duration(mappings: Sequence[ChunkMapping]) -> float:
    return sum(m.duration for m in mappings)


@dataclass
class SegmentBoundaries:
    first_chunk_index: int
    last_chunk_index: int

    @property
    def chunk_count(self) -> int:
        if self.first_chunk_index < 0 or self.last_chunk_index < self.first_chunk_index:
            return 0
        return self.last_chunk_index - self.first_chunk_index + 1


def find_segment_boundaries(
    segment: LogicalSegment,
    chunks: Sequence[ChunkDescriptor],
) -> SegmentBoundaries:
    """Positions of the first and last chunk a segment touches (-1 if none)."""
    first = -1
    last = -1
    for i, chunk in enumerate(chunks):
        if first == -1 and chunk.end > segment.start:
            first = i
        if chunk.start < segment.end:
            last = i
    return SegmentBoundaries(first_chunk_index=first, last_chunk_index=last)


def estimate_processing_time(segment: LogicalSegment, chunk_count: int) -> int:
    """Rough seconds needed to materialize a segment."""
    base = segment.duration * 2
    additional = max(0, chunk_count - 1) * segment.duration * 0.5
    return math.ceil(base + additional)
