"""Tests for the artifact storage backends."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from app.core.storage import (
    LocalStorage,
    S3Storage,
    Storage,
    StorageConfig,
    StorageError,
)


@pytest.fixture
def local(tmp_path) -> LocalStorage:
    return LocalStorage(StorageConfig(backend="local", local_path=str(tmp_path / "store")))


class TestLocalStorage:
    def test_put_then_get(self, local) -> None:
        result = local.put("videos/v1/720p/segment_000.ts", b"chunk", "video/mp2t")

        assert result.success
        assert result.file_size == 5
        assert result.url.startswith("file://")
        assert local.get("videos/v1/720p/segment_000.ts") == b"chunk"

    def test_get_missing_raises(self, local) -> None:
        with pytest.raises(StorageError):
            local.get("uploads/none/original/clip.mp4")

    def test_key_cannot_escape_root(self, local) -> None:
        result = local.put("../outside.bin", b"x")

        assert not result.success
        assert "escapes" in result.error_message
        with pytest.raises(StorageError):
            local.get("../outside.bin")

    def test_cdn_url(self, tmp_path) -> None:
        storage = LocalStorage(
            StorageConfig(
                backend="local",
                local_path=str(tmp_path),
                cdn_domain="cdn.example.com",
                cdn_enabled=True,
            )
        )

        assert storage.public_url("videos/v1/thumbnail.jpg") == "https://cdn.example.com/videos/v1/thumbnail.jpg"
        assert storage.presign("videos/v1/thumbnail.jpg") == "https://cdn.example.com/videos/v1/thumbnail.jpg"


class TestS3Storage:
    def _storage(self, client: MagicMock, **config) -> S3Storage:
        storage = S3Storage(StorageConfig(backend="s3", bucket="videos", region="eu-west-1", **config))
        storage._client = client
        return storage

    def test_put_sends_content_type(self) -> None:
        client = MagicMock()
        client.put_object.return_value = {"ETag": '"abc123"'}
        storage = self._storage(client)

        result = storage.put("videos/v1/1080p/segment_000.ts", b"chunk", "video/mp2t")

        assert result.success
        assert result.etag == "abc123"
        assert result.url == "https://videos.s3.eu-west-1.amazonaws.com/videos/v1/1080p/segment_000.ts"
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["ContentType"] == "video/mp2t"
        assert kwargs["Bucket"] == "videos"

    def test_put_failure_is_reported(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        storage = self._storage(client)

        result = storage.put("videos/v1/1080p/segment_000.ts", b"chunk")

        assert not result.success
        assert "AccessDenied" in result.error_message

    def test_get_failure_raises(self) -> None:
        client = MagicMock()
        client.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        storage = self._storage(client)

        with pytest.raises(StorageError):
            storage.get("uploads/v1/original/clip.mp4")

    def test_endpoint_url_for_minio(self) -> None:
        storage = self._storage(MagicMock(), endpoint_url="http://minio:9000/")

        assert storage.public_url("a/b.ts") == "http://minio:9000/videos/a/b.ts"

    def test_presign(self) -> None:
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://signed"
        storage = self._storage(client)

        assert storage.presign("a/b.ts", expires_in=120) == "https://signed"
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "videos", "Key": "a/b.ts"},
            ExpiresIn=120,
        )

    def test_client_built_lazily(self) -> None:
        storage = S3Storage(StorageConfig(backend="minio", bucket="videos", endpoint_url="http://minio:9000"))

        with patch("boto3.client") as client_factory:
            storage._get_client()
            storage._get_client()

        client_factory.assert_called_once()
        assert client_factory.call_args.kwargs["endpoint_url"] == "http://minio:9000"


class TestStorageFacade:
    def test_selects_backend(self, tmp_path) -> None:
        assert isinstance(Storage(StorageConfig(backend="local", local_path=str(tmp_path)))._backend, LocalStorage)
        assert isinstance(Storage(StorageConfig(backend="minio", bucket="b"))._backend, S3Storage)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError):
            Storage(StorageConfig(backend="ftp"))
