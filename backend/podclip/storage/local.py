"""Filesystem-backed object storage for development and tests.

Objects live under a root directory at their key path. User metadata is
kept in a ``<name>.meta.json`` sidecar next to the object.
"""
import asyncio
import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence

from podclip.errors import ObjectNotFound, StorageError
from podclip.storage.base import DeleteResult, ObjectHead, ObjectStorage, UploadResult

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


class LocalStorage(ObjectStorage):
    """Object storage on the local filesystem."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise StorageError(f"Invalid object key: {key!r}")
        return self.root / key

    def _meta_path(self, key: str) -> Path:
        path = self._path(key)
        return path.with_name(path.name + META_SUFFIX)

    def _read_meta(self, key: str) -> dict:
        meta_path = self._meta_path(key)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())

    async def get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFound(f"Object not found: {key}")
        return await asyncio.to_thread(path.read_bytes)

    async def download_file(self, key: str, local_path: Path) -> int:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFound(f"Object not found: {key}")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, path, local_path)
        return local_path.stat().st_size

    async def upload_file(
        self,
        key: str,
        local_path: Path,
        metadata: Optional[Dict[str, str]] = None,
        content_type: str = "video/mp4",
    ) -> UploadResult:
        local_path = Path(local_path)
        if not local_path.is_file():
            raise StorageError(f"Local file not found: {local_path}")

        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Readers only ever see a complete object: copy beside it, then rename
        partial = path.with_name(f".{path.name}.{uuid.uuid4().hex}.partial")
        try:
            await asyncio.to_thread(shutil.copyfile, local_path, partial)
            self._meta_path(key).write_text(json.dumps({
                "content_type": content_type,
                "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            }))
            os.replace(partial, path)
        finally:
            partial.unlink(missing_ok=True)

        return UploadResult(
            key=key,
            size=path.stat().st_size,
            uploaded_at=datetime.now(timezone.utc).isoformat(),
        )

    async def put_text(self, key: str, content: str):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    async def head(self, key: str) -> ObjectHead:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFound(f"Object not found: {key}")
        meta = self._read_meta(key)
        return ObjectHead(
            key=key,
            size=path.stat().st_size,
            metadata=meta.get("metadata", {}),
            content_type=meta.get("content_type"),
        )

    async def delete_objects(self, keys: Sequence[str]) -> DeleteResult:
        result = DeleteResult()
        for key in keys:
            try:
                path = self._path(key)
                path.unlink(missing_ok=True)
                self._meta_path(key).unlink(missing_ok=True)
                result.deleted.append(key)
            except (OSError, StorageError) as e:
                logger.warning(f"Failed to delete {key}: {e}")
                result.errors.append({"key": key, "code": type(e).__name__, "message": str(e)})
        return result
