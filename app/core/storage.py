"""Universal artifact storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Objects are addressed by key (``uploads/<video>/original/<name>``,
``videos/<video>/<resolution>/<chunk>``); the key is the artifact reference
handed between the upload flow and the transcode pipeline.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.core.config import settings


class StorageError(Exception):
    """Raised when an object cannot be read from storage."""

    pass


@dataclass
class StorageResult:
    """Result of a storage write."""
    success: bool
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio, aws
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cdn_domain: Optional[str] = None
    cdn_enabled: bool = False


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        """Write bytes under ``key``."""
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the bytes stored under ``key``."""
        pass

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Stable URL for a key (CDN, endpoint or bucket URL)."""
        pass

    @abstractmethod
    def presign(self, key: str, expires_in: int = 3600) -> str:
        """Temporary URL for a key."""
        pass


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.cdn_domain = config.cdn_domain
        self.cdn_enabled = config.cdn_enabled

    def _get_full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        """Write bytes to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)

            return StorageResult(
                success=True,
                key=key,
                url=self.public_url(key),
                file_size=len(data),
            )
        except (OSError, StorageError) as e:
            return StorageResult(
                success=False,
                key=key,
                url="",
                error_message=str(e),
            )

    def get(self, key: str) -> bytes:
        """Read bytes from local storage."""
        path = self._get_full_path(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read '{key}': {e}") from e

    def public_url(self, key: str) -> str:
        if self.cdn_enabled and self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return f"file://{(self.base_path / key).absolute()}"

    def presign(self, key: str, expires_in: int = 3600) -> str:
        # Local files carry no signature; the public URL is the access URL
        return self.public_url(key)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
            }

            if self.config.access_key and self.config.secret_key:
                client_kwargs["aws_access_key_id"] = self.config.access_key
                client_kwargs["aws_secret_access_key"] = self.config.secret_key

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        """Upload bytes to S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                ContentLength=len(data),
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(
                success=False,
                key=key,
                url="",
                error_message=str(e),
            )

        return StorageResult(
            success=True,
            key=key,
            url=self.public_url(key),
            file_size=len(data),
            etag=response.get("ETag", "").strip('"'),
        )

    def get(self, key: str) -> bytes:
        """Download an object from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to get '{key}': {e}") from e

    def public_url(self, key: str) -> str:
        if self.config.cdn_enabled and self.config.cdn_domain:
            return f"https://{self.config.cdn_domain}/{key}"
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}/{key}"
        return f"https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com/{key}"

    def presign(self, key: str, expires_in: int = 3600) -> str:
        """Generate a presigned GET URL."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.config.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to presign '{key}': {e}") from e


class Storage:
    """Universal storage interface.

    Automatically selects the appropriate backend based on configuration.
    """

    _instance: Optional["Storage"] = None

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
        """
        if config is None:
            config = StorageConfig(
                backend=settings.STORAGE_BACKEND,
                bucket=settings.STORAGE_BUCKET,
                region=settings.STORAGE_REGION,
                access_key=settings.STORAGE_ACCESS_KEY,
                secret_key=settings.STORAGE_SECRET_KEY,
                endpoint_url=settings.STORAGE_ENDPOINT_URL,
                use_ssl=settings.STORAGE_USE_SSL,
                local_path=settings.LOCAL_STORAGE_PATH,
                cdn_domain=settings.CDN_DOMAIN,
                cdn_enabled=settings.CDN_ENABLED,
            )

        self.config = config
        self._backend = self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    @classmethod
    def get_instance(cls) -> "Storage":
        """Get singleton storage instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        return self._backend.put(key, data, content_type)

    def get(self, key: str) -> bytes:
        return self._backend.get(key)

    def public_url(self, key: str) -> str:
        return self._backend.public_url(key)

    def presign(self, key: str, expires_in: int = 3600) -> str:
        return self._backend.presign(key, expires_in)


def get_storage() -> Storage:
    """Get the default storage instance."""
    return Storage.get_instance()
