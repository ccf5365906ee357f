"""Object storage interface consumed by the pipeline."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from podclip.errors import ObjectNotFound


@dataclass
class ObjectHead:
    """Size and user metadata of a stored object."""
    key: str
    size: int
    metadata: Dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    etag: Optional[str] = None


@dataclass
class UploadResult:
    key: str
    size: int
    etag: Optional[str] = None
    uploaded_at: Optional[str] = None


@dataclass
class DeleteResult:
    """Outcome of a batch delete."""
    deleted: List[str] = field(default_factory=list)
    errors: List[dict] = field(default_factory=list)

    @property
    def failed_keys(self) -> List[str]:
        return [e["key"] for e in self.errors if "key" in e]


class ObjectStorage(ABC):
    """Async object storage API."""

    @abstractmethod
    async def get_bytes(self, key: str) -> bytes:
        """Read a whole object. Raises ObjectNotFound if absent."""

    async def get_text(self, key: str, encoding: str = "utf-8") -> str:
        data = await self.get_bytes(key)
        return data.decode(encoding)

    @abstractmethod
    async def download_file(self, key: str, local_path: Path) -> int:
        """Write an object to a local file and return its size."""

    @abstractmethod
    async def upload_file(
        self,
        key: str,
        local_path: Path,
        metadata: Optional[Dict[str, str]] = None,
        content_type: str = "video/mp4",
    ) -> UploadResult:
        """Store a local file under ``key``, replacing any existing object."""

    @abstractmethod
    async def head(self, key: str) -> ObjectHead:
        """Fetch object size and metadata. Raises ObjectNotFound if absent."""

    async def exists(self, key: str) -> bool:
        try:
            await self.head(key)
            return True
        except ObjectNotFound:
            return False

    @abstractmethod
    async def delete_objects(self, keys: Sequence[str]) -> DeleteResult:
        """Delete a batch of objects, reporting per-key failures."""
