"""Shared fixtures: a throwaway database, local storage and a fake transcoder."""
import os
import tempfile
from pathlib import Path

# Settings create their directories at import time; keep them out of the repo.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="podclip-tests-"))
os.environ.setdefault("PODCLIP_DATA_DIR", str(_TEST_ROOT))
os.environ.setdefault("PODCLIP_WORK_DIR", str(_TEST_ROOT / "work"))
os.environ.setdefault("PODCLIP_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/podclip.db")
os.environ.setdefault("PODCLIP_LOCAL_STORAGE_ROOT", str(_TEST_ROOT / "storage"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

import podclip.models  # noqa: F401
from podclip.db.database import Base, create_engine_for, create_session_maker
from podclip.errors import TranscodeFailed
from podclip.pipeline.keys import manifest_key
from podclip.storage.local import LocalStorage
from podclip.utils.ffmpeg import MediaInfo

TENANT = "tenant-1"
EPISODE = "ep-1"


@pytest.fixture
def session_maker(tmp_path):
    path = tmp_path / "podclip.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # NullPool keeps connections from outliving the event loop of each test
    engine = create_engine_for(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    return create_session_maker(engine)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


def build_manifest(durations, media_sequence=0):
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{int(max(durations))}",
        f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}",
    ]
    for i, duration in enumerate(durations):
        lines.append(f"#EXTINF:{duration},")
        lines.append(f"chunk_{i:03d}.ts")
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


async def seed_track(storage, track_name="main", durations=(30.0, 30.0, 30.0, 30.0)):
    """Write a manifest and its chunk files for a track."""
    key = manifest_key(TENANT, EPISODE, track_name)
    await storage.put_text(key, build_manifest(durations))
    prefix = key.rsplit("/", 1)[0]
    for i in range(len(durations)):
        await storage.put_text(f"{prefix}/chunk_{i:03d}.ts", f"{track_name}-chunk-{i}")
    return key


class FakeTranscoder:
    """Writes small text files instead of media and remembers what it was asked."""

    def __init__(self, fail_extract=False, width=1920, height=1080):
        self.fail_extract = fail_extract
        self.width = width
        self.height = height
        self.extract_calls = []
        self.concat_calls = []
        self.durations = {}

    def _info(self, path) -> MediaInfo:
        return MediaInfo(
            duration=self.durations.get(Path(path).name, 1.0),
            width=self.width,
            height=self.height,
            frame_rate="30/1",
            video_codec="h264",
            pixel_format="yuv420p",
            audio_codec="aac",
            sample_rate=48000,
            channels=2,
            format_name="mov,mp4,m4a,3gp,3g2,mj2",
            bit_rate=2_000_000,
            stream_count=2,
        )

    async def extract_range(self, src, dst, start, duration):
        self.extract_calls.append((Path(src).read_text(), start, duration))
        if self.fail_extract:
            raise TranscodeFailed(f"Extraction of {Path(src).name} failed")
        Path(dst).write_text(f"[{Path(src).read_text()}@{start:.3f}+{duration:.3f}]")
        self.durations[Path(dst).name] = duration
        return "reencode"

    async def probe(self, path):
        return self._info(path)

    async def verify_output(self, path):
        return self._info(path)

    async def concat(self, paths, dst, reencode=False):
        self.concat_calls.append(([Path(p).read_text() for p in paths], reencode))
        Path(dst).write_text("".join(Path(p).read_text() for p in paths))
        self.durations[Path(dst).name] = sum(self.durations.get(Path(p).name, 1.0) for p in paths)
        return Path(dst)


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()
