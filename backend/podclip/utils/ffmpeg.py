"""FFmpeg and ffprobe utilities."""
import asyncio
import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from podclip.config import settings
from podclip.errors import TranscodeFailed

logger = logging.getLogger(__name__)

EXTRACT_REENCODE = "reencode"
EXTRACT_COPY = "copy"


@dataclass
class MediaInfo:
    """Media metadata container."""
    duration: float
    width: int = 0
    height: int = 0
    fps: float = 0.0
    frame_rate: str = "0/1"
    video_codec: Optional[str] = None
    pixel_format: Optional[str] = None
    audio_codec: Optional[str] = None
    sample_rate: int = 0
    channels: int = 0
    audio_bit_rate: int = 0
    format_name: str = "unknown"
    format_long_name: str = "unknown"
    bit_rate: int = 0
    size: int = 0
    stream_count: int = 0

    @property
    def has_video(self) -> bool:
        return self.video_codec is not None

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class FFmpegError(Exception):
    """FFmpeg related error."""
    pass


def check_ffmpeg_available() -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(settings.ffmpeg_path) is not None


def check_ffprobe_available() -> bool:
    """Check if ffprobe is available."""
    return shutil.which(settings.ffprobe_path) is not None


def _to_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_probe_output(data: dict) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -print_format json`` output."""
    video_stream = None
    audio_stream = None
    streams = data.get("streams", [])
    for stream in streams:
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    fmt = data.get("format", {})
    video_stream = video_stream or {}
    audio_stream = audio_stream or {}

    # Parse frame rate
    fps_str = video_stream.get("r_frame_rate", "0/1")
    if "/" in fps_str:
        num, den = fps_str.split("/", 1)
        fps = _to_float(num) / _to_float(den) if _to_float(den) > 0 else 0.0
    else:
        fps = _to_float(fps_str)

    duration = _to_float(fmt.get("duration"))
    if duration == 0:
        duration = _to_float(video_stream.get("duration")) or _to_float(audio_stream.get("duration"))

    return MediaInfo(
        duration=duration,
        width=_to_int(video_stream.get("width")),
        height=_to_int(video_stream.get("height")),
        fps=fps,
        frame_rate=fps_str,
        video_codec=video_stream.get("codec_name"),
        pixel_format=video_stream.get("pix_fmt"),
        audio_codec=audio_stream.get("codec_name"),
        sample_rate=_to_int(audio_stream.get("sample_rate")),
        channels=_to_int(audio_stream.get("channels")),
        audio_bit_rate=_to_int(audio_stream.get("bit_rate")),
        format_name=fmt.get("format_name", "unknown"),
        format_long_name=fmt.get("format_long_name", "unknown"),
        bit_rate=_to_int(fmt.get("bit_rate")),
        size=_to_int(fmt.get("size")),
        stream_count=len(streams),
    )


def build_concat_list(paths: Sequence[str | Path]) -> str:
    """
    Build a concat demuxer list, preserving the given order.

    Single quotes in paths are escaped the way the demuxer expects.
    """
    if not paths:
        raise ValueError("Segment files array is required and must not be empty")
    lines = []
    for path in paths:
        escaped = str(path).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def check_concat_compatible(infos: Sequence[MediaInfo]) -> List[str]:
    """
    Compare stream parameters that stream-copy concatenation depends on.

    Returns:
        Human readable mismatches; empty when all inputs agree
    """
    if len(infos) < 2:
        return []
    reference = infos[0]
    problems = []
    for i, info in enumerate(infos[1:], start=1):
        if info.video_codec != reference.video_codec:
            problems.append(f"part {i} video codec {info.video_codec} != {reference.video_codec}")
        if info.resolution != reference.resolution:
            problems.append(f"part {i} resolution {info.resolution} != {reference.resolution}")
        if info.audio_codec != reference.audio_codec:
            problems.append(f"part {i} audio codec {info.audio_codec} != {reference.audio_codec}")
    return problems


class Transcoder:
    """Wraps the ffmpeg/ffprobe processes used by the clip pipeline."""

    def __init__(self, ffmpeg_path: str = None, ffprobe_path: str = None):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.ffprobe_path = ffprobe_path or settings.ffprobe_path

    async def _run(self, cmd: List[str]) -> str:
        """Run a process to completion and return stdout."""
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise FFmpegError(f"Failed to spawn {cmd[0]}: {e}")

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="ignore")[-2000:]
            raise FFmpegError(f"{Path(cmd[0]).name} failed with code {proc.returncode}: {tail}")

        return stdout.decode("utf-8", errors="ignore")

    async def version(self) -> str:
        output = await self._run([self.ffmpeg_path, "-version"])
        match = re.search(r"ffmpeg version (\S+)", output)
        return match.group(1) if match else "unknown"

    async def probe(self, path: str | Path) -> MediaInfo:
        """
        Get media metadata using ffprobe.

        Raises:
            FFmpegError: If the file is missing or ffprobe fails
        """
        path = Path(path)
        if not path.exists():
            raise FFmpegError(f"Media file not found: {path}")

        stdout = await self._run([
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path)
        ])
        try:
            return parse_probe_output(json.loads(stdout))
        except json.JSONDecodeError as e:
            raise FFmpegError(f"Failed to parse ffprobe output: {e}")

    def _encode_args(self) -> List[str]:
        return [
            "-c:v", settings.export_video_codec,
            "-preset", settings.export_video_preset,
            "-crf", str(settings.export_video_crf),
            "-c:a", settings.export_audio_codec,
            "-b:a", settings.export_audio_bitrate,
        ]

    def reencode_command(self, src: Path, dst: Path, start: float, duration: float) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(src),
            "-ss", f"{start:.3f}",
            "-t", f"{duration:.3f}",
            *self._encode_args(),
            "-avoid_negative_ts", "make_zero",
            "-movflags", "+faststart",
            str(dst)
        ]

    def copy_command(self, src: Path, dst: Path, start: float, duration: float) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{start:.3f}",
            "-i", str(src),
            "-t", f"{duration:.3f}",
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
            str(dst)
        ]

    async def extract_range(
        self,
        src: str | Path,
        dst: str | Path,
        start: float,
        duration: float,
    ) -> str:
        """
        Extract ``[start, start + duration)`` of ``src`` into ``dst``.

        Re-encodes to the normalized preset first so that parts from
        different chunks can later be concatenated by stream copy. Falls
        back to stream copy once.

        Returns:
            The extraction mode that succeeded
        """
        src = Path(src)
        dst = Path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)

        try:
            source = await self.probe(src)
        except FFmpegError as e:
            logger.warning(f"Could not probe input {src}: {e}")
        else:
            if source.duration > 0:
                if start >= source.duration:
                    raise TranscodeFailed(
                        f"Start offset ({start:.3f}s) is beyond input duration ({source.duration:.3f}s)"
                    )
                if start + duration > source.duration:
                    adjusted = source.duration - start
                    logger.info(f"Adjusting duration from {duration:.3f}s to {adjusted:.3f}s to fit {src.name}")
                    duration = adjusted

        mode = EXTRACT_REENCODE
        try:
            await self._run(self.reencode_command(src, dst, start, duration))
        except FFmpegError as e:
            logger.warning(f"Re-encoding {src.name} failed, trying with stream copy: {e}")
            mode = EXTRACT_COPY
            try:
                await self._run(self.copy_command(src, dst, start, duration))
            except FFmpegError as copy_error:
                raise TranscodeFailed(
                    f"Extraction of {src.name} [{start:.3f}s +{duration:.3f}s] failed: {copy_error}"
                )

        await self.verify_output(dst)
        return mode

    async def verify_output(self, path: Path) -> MediaInfo:
        """Probe a freshly written file; zero duration is fatal."""
        try:
            info = await self.probe(path)
        except FFmpegError as e:
            raise TranscodeFailed(f"Could not verify output {path.name}: {e}")

        if info.duration <= 0:
            raise TranscodeFailed(f"Output file {path.name} has zero duration")
        if not info.has_video:
            logger.warning(f"Output file {path.name} has no video stream")
        if not info.has_audio:
            logger.warning(f"Output file {path.name} has no audio stream")
        return info

    async def concat(
        self,
        paths: Sequence[str | Path],
        dst: str | Path,
        reencode: bool = False,
    ) -> Path:
        """
        Concatenate files in the given order with the concat demuxer.

        Args:
            paths: Input files, already in final order
            dst: Output file
            reencode: Re-encode instead of stream copy (for mismatched inputs)
        """
        dst = Path(dst)
        list_path = dst.with_name(f"{dst.stem}_concat.txt")
        list_path.write_text(build_concat_list(paths))

        cmd = [
            self.ffmpeg_path,
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_path),
        ]
        cmd += self._encode_args() if reencode else ["-c", "copy"]
        cmd += ["-avoid_negative_ts", "make_zero", str(dst)]

        try:
            await self._run(cmd)
        except FFmpegError as e:
            raise TranscodeFailed(f"Concatenation of {len(paths)} files failed: {e}")
        finally:
            list_path.unlink(missing_ok=True)

        if not dst.exists() or dst.stat().st_size == 0:
            raise TranscodeFailed("FFmpeg produced empty output file")

        return dst


# Default transcoder instance
transcoder = Transcoder()
