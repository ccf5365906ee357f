"""S3 object storage backend."""
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from podclip.errors import ObjectNotFound, StorageError, StorageThrottled
from podclip.storage.base import DeleteResult, ObjectHead, ObjectStorage, UploadResult

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
THROTTLE_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "503",
}


def boto3_config() -> BotoConfig:
    # Throttling is retried by the workflow, not by botocore.
    return BotoConfig(
        retries={"max_attempts": 2, "mode": "standard"},
        connect_timeout=10,
        read_timeout=300,
    )


def translate_client_error(error: Exception, key: str) -> Exception:
    """Map a boto error onto the storage error taxonomy."""
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in NOT_FOUND_CODES or status == 404:
            return ObjectNotFound(f"Object not found: {key}")
        if code in THROTTLE_CODES or status == 503:
            return StorageThrottled(f"Storage throttled on {key}: {code}")
        return StorageError(f"Storage request failed for {key}: {code or error}")
    return StorageError(f"Storage request failed for {key}: {error}")


class S3Storage(ObjectStorage):
    """Object storage on an S3 bucket. Blocking boto3 calls run in threads."""

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=boto3_config(),
        )

    async def _call(self, key: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, key) from e

    async def get_bytes(self, key: str) -> bytes:
        def _read():
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        return await self._call(key, _read)

    async def download_file(self, key: str, local_path: Path) -> int:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        await self._call(key, self.client.download_file, self.bucket, key, str(local_path))
        return local_path.stat().st_size

    async def upload_file(
        self,
        key: str,
        local_path: Path,
        metadata: Optional[Dict[str, str]] = None,
        content_type: str = "video/mp4",
    ) -> UploadResult:
        local_path = Path(local_path)
        size = local_path.stat().st_size
        extra_args = {
            "ContentType": content_type,
            "Metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        await self._call(
            key,
            self.client.upload_file,
            str(local_path),
            self.bucket,
            key,
            ExtraArgs=extra_args,
        )
        return UploadResult(
            key=key,
            size=size,
            uploaded_at=datetime.now(timezone.utc).isoformat(),
        )

    async def head(self, key: str) -> ObjectHead:
        response = await self._call(key, self.client.head_object, Bucket=self.bucket, Key=key)
        return ObjectHead(
            key=key,
            size=int(response.get("ContentLength", 0)),
            metadata=dict(response.get("Metadata") or {}),
            content_type=response.get("ContentType"),
            etag=response.get("ETag"),
        )

    async def delete_objects(self, keys: Sequence[str]) -> DeleteResult:
        result = DeleteResult()
        if not keys:
            return result

        response = await self._call(
            keys[0],
            self.client.delete_objects,
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": k} for k in keys], "Quiet": False},
        )
        result.deleted.extend(d["Key"] for d in response.get("Deleted", []))
        for err in response.get("Errors", []):
            result.errors.append({
                "key": err.get("Key"),
                "code": err.get("Code"),
                "message": err.get("Message"),
            })
        return result
