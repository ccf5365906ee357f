"""Tests for the object storage backends."""
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from podclip.errors import ObjectNotFound, StorageError, StorageThrottled
from podclip.storage.local import LocalStorage
from podclip.storage.s3 import S3Storage, translate_client_error


def _client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "GetObject",
    )


class TestTranslateClientError:
    """Tests for mapping boto errors."""

    def test_not_found(self):
        assert isinstance(translate_client_error(_client_error("NoSuchKey", 404), "k"), ObjectNotFound)
        assert isinstance(translate_client_error(_client_error("Whatever", 404), "k"), ObjectNotFound)

    def test_throttled_is_retryable(self):
        error = translate_client_error(_client_error("SlowDown", 503), "k")
        assert isinstance(error, StorageThrottled)
        assert error.retryable

    def test_other_errors(self):
        error = translate_client_error(_client_error("AccessDenied", 403), "k")
        assert type(error) is StorageError
        assert "AccessDenied" in str(error)

    def test_connection_errors(self):
        error = translate_client_error(EndpointConnectionError(endpoint_url="http://s3"), "k")
        assert isinstance(error, StorageError)


class _FakeS3Client:
    def __init__(self):
        self.objects = {}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise _client_error("404", 404)
        return {"ContentLength": len(self.objects[Key]), "Metadata": {"clip-id": "c1"}, "ContentType": "video/mp4"}

    def get_object(self, Bucket, Key):
        raise _client_error("SlowDown", 503)

    def delete_objects(self, Bucket, Delete):
        keys = [o["Key"] for o in Delete["Objects"]]
        return {
            "Deleted": [{"Key": k} for k in keys if k in self.objects],
            "Errors": [{"Key": k, "Code": "AccessDenied", "Message": "denied"} for k in keys if k not in self.objects],
        }


class TestS3Storage:
    """Tests for the S3 backend against a fake client."""

    @pytest.mark.asyncio
    async def test_head(self):
        client = _FakeS3Client()
        client.objects["a.mp4"] = b"12345"
        storage = S3Storage("bucket", client=client)

        head = await storage.head("a.mp4")

        assert head.size == 5
        assert head.metadata == {"clip-id": "c1"}
        assert await storage.exists("a.mp4")
        assert not await storage.exists("b.mp4")

    @pytest.mark.asyncio
    async def test_throttling_surfaces_as_storage_throttled(self):
        storage = S3Storage("bucket", client=_FakeS3Client())
        with pytest.raises(StorageThrottled):
            await storage.get_bytes("a.mp4")

    @pytest.mark.asyncio
    async def test_delete_reports_per_key_errors(self):
        client = _FakeS3Client()
        client.objects["a.mp4"] = b"1"
        storage = S3Storage("bucket", client=client)

        result = await storage.delete_objects(["a.mp4", "b.mp4"])

        assert result.deleted == ["a.mp4"]
        assert result.failed_keys == ["b.mp4"]
        assert result.errors[0]["code"] == "AccessDenied"


class TestLocalStorage:
    """Tests for the filesystem backend."""

    @pytest.mark.asyncio
    async def test_upload_head_download(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        src = tmp_path / "src.mp4"
        src.write_bytes(b"video")

        upload = await storage.upload_file("t/e/clip.mp4", src, metadata={"segment-count": 3})
        head = await storage.head("t/e/clip.mp4")
        size = await storage.download_file("t/e/clip.mp4", tmp_path / "out" / "copy.mp4")

        assert upload.size == 5
        assert head.metadata == {"segment-count": "3"}
        assert head.content_type == "video/mp4"
        assert size == 5

    @pytest.mark.asyncio
    async def test_missing_object(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        with pytest.raises(ObjectNotFound):
            await storage.get_bytes("nope")
        with pytest.raises(ObjectNotFound):
            await storage.head("nope")

    @pytest.mark.asyncio
    async def test_keys_cannot_escape_root(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        with pytest.raises(StorageError):
            await storage.get_bytes("../secret")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        await storage.put_text("a.txt", "x")

        result = await storage.delete_objects(["a.txt", "a.txt"])

        assert result.deleted == ["a.txt", "a.txt"]
        assert not await storage.exists("a.txt")

    @pytest.mark.asyncio
    async def test_interrupted_upload_leaves_no_object(self, tmp_path, monkeypatch):
        storage = LocalStorage(tmp_path / "store")
        src = tmp_path / "src.mp4"
        src.write_bytes(b"video")

        def _copy_half(source, destination):
            destination.write_bytes(b"vi")
            raise OSError("No space left on device")

        monkeypatch.setattr("podclip.storage.local.shutil.copyfile", _copy_half)

        with pytest.raises(OSError):
            await storage.upload_file("t/e/segment_000.mp4", src)

        assert not await storage.exists("t/e/segment_000.mp4")
        assert list((tmp_path / "store").rglob("*.partial")) == []

    @pytest.mark.asyncio
    async def test_upload_replaces_existing_object(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        src = tmp_path / "src.mp4"
        src.write_bytes(b"first")
        await storage.upload_file("t/e/clip.mp4", src)
        src.write_bytes(b"second!")

        upload = await storage.upload_file("t/e/clip.mp4", src, metadata={"segment-count": 2})

        assert upload.size == 7
        assert (await storage.head("t/e/clip.mp4")).metadata == {"segment-count": "2"}
