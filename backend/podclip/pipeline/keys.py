"""Deterministic object storage locators."""


def _require(**parts):
    missing = [name for name, value in parts.items() if value is None or value == ""]
    if missing:
        raise ValueError(f"Missing key components: {', '.join(missing)}")


def track_prefix(tenant_id: str, episode_id: str, track_name: str) -> str:
    _require(tenant_id=tenant_id, episode_id=episode_id, track_name=track_name)
    return f"{tenant_id}/{episode_id}/videos/{track_name}/chunks"


def manifest_key(tenant_id: str, episode_id: str, track_name: str) -> str:
    return f"{track_prefix(tenant_id, episode_id, track_name)}/{track_name}_chunk.m3u8"


def clip_prefix(tenant_id: str, episode_id: str, clip_id: str) -> str:
    _require(tenant_id=tenant_id, episode_id=episode_id, clip_id=clip_id)
    return f"{tenant_id}/{episode_id}/clips/{clip_id}"


def segment_key(tenant_id: str, episode_id: str, clip_id: str, index: int) -> str:
    """Key of the materialized segment at ``index`` (zero-based)."""
    if index < 0:
        raise ValueError(f"Segment index must be non-negative: {index}")
    return f"{clip_prefix(tenant_id, episode_id, clip_id)}/segments/{index:03d}.mp4"


def clip_key(tenant_id: str, episode_id: str, clip_id: str) -> str:
    return f"{clip_prefix(tenant_id, episode_id, clip_id)}/clip.mp4"
