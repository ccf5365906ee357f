"""Object storage backends."""
from podclip.config import settings
from podclip.storage.base import DeleteResult, ObjectHead, ObjectStorage, UploadResult


def create_storage() -> ObjectStorage:
    """Build the storage backend selected in settings."""
    if settings.storage_backend == "s3":
        from podclip.storage.s3 import S3Storage
        return S3Storage(
            bucket=settings.bucket_name,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
        )

    from podclip.storage.local import LocalStorage
    return LocalStorage(settings.local_storage_root)


__all__ = ["ObjectStorage", "ObjectHead", "UploadResult", "DeleteResult", "create_storage"]
