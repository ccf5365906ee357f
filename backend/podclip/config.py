"""Application configuration."""
from pathlib import Path
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PODCLIP_",
    )

    # App settings
    app_name: str = "podclip"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/podclip.db"

    # Data directories
    data_dir: Path = Path("./data")
    work_dir: Path = Path("./data/work")  # Per-invocation temp dirs live here

    # Object storage
    storage_backend: Literal["s3", "local"] = "local"
    bucket_name: str = "podclip-media"
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    local_storage_root: Path = Path("./data/storage")

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Normalized encode preset for extracted segments
    export_video_codec: str = "libx264"
    export_video_preset: str = "fast"
    export_video_crf: int = 23
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "128k"

    # Tracks
    default_track: str = "main"
    max_tracks_per_episode: int = 50

    # Manifest cache
    manifest_cache_size: int = 64
    manifest_cache_ttl_seconds: float = 300.0

    # Workflow
    segment_concurrency: int = 5
    extraction_timeout_seconds: float = 900.0
    stitching_timeout_seconds: float = 900.0
    storage_retry_attempts: int = 4
    storage_retry_min_wait: float = 1.0
    storage_retry_max_wait: float = 20.0

    # Stitcher
    stitch_download_attempts: int = 3
    stitch_download_backoff_seconds: float = 1.0
    cleanup_batch_size: int = 1000
    cleanup_attempts: int = 2

    # Allowed drift between requested and mapped segment duration
    duration_tolerance_seconds: float = 0.1


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.work_dir.mkdir(parents=True, exist_ok=True)
