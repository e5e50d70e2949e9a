"""Universal storage module supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.

Backends are synchronous; callers on the event loop go through
``media_pipeline.modules.derivatives.gateway`` which moves each call onto a
thread. Backend failures are raised as ``StorageError`` subclasses instead of
being folded into a result flag, so the gateway can tell transient faults
from permanent ones.
"""

import hashlib
import hmac
import logging
import mimetypes
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional
from urllib.parse import quote, unquote, urlencode, urlparse

from media_pipeline.core.config import settings
from media_pipeline.core.errors import ObjectNotFoundError, StorageError, StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class ObjectInfo:
    """Metadata of a stored object, without its body."""
    key: str
    content_type: str
    length: int


@dataclass
class StoredObject:
    """An object read back from storage."""
    key: str
    data: bytes
    content_type: str
    length: int


@dataclass
class ObjectStream:
    """An open object whose body is read lazily.

    ``chunks`` releases the underlying file or connection once exhausted or
    closed.
    """
    key: str
    content_type: str
    length: int
    chunks: Iterator[bytes]


@dataclass
class PresignedUpload:
    """A time-limited write credential for one key."""
    url: str
    method: str
    headers: dict
    expires_at: float


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cdn_domain: Optional[str] = None
    cdn_enabled: bool = False
    # Local backend data plane
    public_base_url: str = "http://localhost:8000"
    api_prefix: str = "/api/v1"
    signing_key: str = ""


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        cache_control: Optional[str] = None,
    ) -> None:
        """Write an object, overwriting any existing one."""

    @abstractmethod
    def get_object(self, key: str) -> StoredObject:
        """Read an object. Raises ObjectNotFoundError when absent."""

    @abstractmethod
    def open_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ObjectStream:
        """Open an object for chunked reading. Raises ObjectNotFoundError when absent."""

    @abstractmethod
    def head_object(self, key: str) -> Optional[ObjectInfo]:
        """Object metadata, or None if the key does not exist."""

    @abstractmethod
    def delete_object(self, key: str) -> bool:
        """Delete an object. Returns False if it did not exist."""

    @abstractmethod
    def object_url(self, key: str) -> str:
        """Native (non-CDN) public URL of an object."""

    @abstractmethod
    def key_from_url(self, url: str) -> str:
        """Inverse of object_url."""

    @abstractmethod
    def presigned_put(self, key: str, content_type: str, expires_in: int) -> PresignedUpload:
        """Issue a write credential scoped to one key and content type."""


def _read_file_chunks(path: Path, chunk_size: int) -> Iterator[bytes]:
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            yield chunk


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Objects live under ``local_path``; the content type sits next to each
    object in a ``.meta`` sidecar. Upload URLs point at the API's local upload
    endpoint and are signed with HMAC-SHA256.
    """

    META_SUFFIX = ".meta"

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = config.public_base_url.rstrip("/")
        self.api_prefix = config.api_prefix
        self.signing_key = (config.signing_key or settings.SECRET_KEY).encode()

    def _get_full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}", key=key, transient=False)
        return path

    def _meta_path(self, path: Path) -> Path:
        return path.with_name(path.name + self.META_SUFFIX)

    def _content_type(self, path: Path) -> str:
        meta = self._meta_path(path)
        if meta.is_file():
            return meta.read_text().strip()
        return mimetypes.guess_type(path.name)[0] or DEFAULT_CONTENT_TYPE

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        cache_control: Optional[str] = None,
    ) -> None:
        dest_path = self._get_full_path(key)
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)
            self._meta_path(dest_path).write_text(content_type)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}", key=key) from e

    def get_object(self, key: str) -> StoredObject:
        path = self._get_full_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}", key=key) from e
        return StoredObject(key=key, data=data, content_type=self._content_type(path), length=len(data))

    def open_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ObjectStream:
        info = self.head_object(key)
        if info is None:
            raise ObjectNotFoundError(key)
        return ObjectStream(
            key=key,
            content_type=info.content_type,
            length=info.length,
            chunks=_read_file_chunks(self._get_full_path(key), chunk_size),
        )

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        path = self._get_full_path(key)
        try:
            length = path.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to stat {key}: {e}", key=key) from e
        if not path.is_file():
            return None
        return ObjectInfo(key=key, content_type=self._content_type(path), length=length)

    def delete_object(self, key: str) -> bool:
        path = self._get_full_path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
            self._meta_path(path).unlink(missing_ok=True)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}", key=key) from e
        return True

    def object_url(self, key: str) -> str:
        return f"{self.public_base_url}{self.api_prefix}/media/{quote(key)}"

    def key_from_url(self, url: str) -> str:
        path = unquote(urlparse(url).path)
        media_prefix = f"{self.api_prefix}/media/"
        if path.startswith(media_prefix):
            return path[len(media_prefix):]
        return path.lstrip("/")

    def _signature(self, key: str, content_type: str, expires: int) -> str:
        message = f"PUT\n{key}\n{content_type}\n{expires}".encode()
        return hmac.new(self.signing_key, message, hashlib.sha256).hexdigest()

    def presigned_put(self, key: str, content_type: str, expires_in: int) -> PresignedUpload:
        expires = int(time.time()) + expires_in
        query = urlencode({
            "content_type": content_type,
            "expires": expires,
            "signature": self._signature(key, content_type, expires),
        })
        return PresignedUpload(
            url=f"{self.public_base_url}{self.api_prefix}/uploads/local/{quote(key)}?{query}",
            method="PUT",
            headers={"Content-Type": content_type},
            expires_at=float(expires),
        )

    def verify_upload(
        self,
        key: str,
        content_type: str,
        expires: int,
        signature: str,
        now: Optional[float] = None,
    ) -> bool:
        """Check a local upload request against its signed URL."""
        now = time.time() if now is None else now
        if expires < now:
            return False
        expected = self._signature(key, content_type, expires)
        return hmac.compare_digest(expected, signature)


# botocore error codes worth retrying
_TRANSIENT_CODES = frozenset({
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
})
_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _stream_body(body, chunk_size: int) -> Iterator[bytes]:
    try:
        yield from body.iter_chunks(chunk_size)
    finally:
        body.close()


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
                "config": BotoConfig(
                    signature_version="s3v4",
                    retries={"max_attempts": 1, "mode": "standard"},
                    max_pool_connections=32,
                ),
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = client_kwargs["config"].merge(
                    BotoConfig(s3={"addressing_style": "path"})
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _translate(self, error: Exception, key: str, operation: str) -> StorageError:
        """Map a boto3/botocore failure onto the storage error taxonomy."""
        from botocore.exceptions import (
            ClientError,
            ConnectionClosedError,
            ConnectTimeoutError,
            EndpointConnectionError,
            NoCredentialsError,
            ReadTimeoutError,
        )

        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if code in _NOT_FOUND_CODES:
                return ObjectNotFoundError(key)
            transient = code in _TRANSIENT_CODES or status >= 500
            return StorageError(f"{operation} {key} failed: {code or status}", key=key, transient=transient)
        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError)):
            return StorageUnavailableError(f"{operation} {key}: store unreachable: {error}", key=key)
        if isinstance(error, NoCredentialsError):
            return StorageUnavailableError(f"{operation} {key}: no credentials", key=key, transient=False)
        if isinstance(error, (ConnectionClosedError, ReadTimeoutError)):
            return StorageError(f"{operation} {key} interrupted: {error}", key=key, transient=True)
        return StorageError(f"{operation} {key} failed: {error}", key=key, transient=False)

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        cache_control: Optional[str] = None,
    ) -> None:
        params = {
            "Bucket": self.config.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = cache_control

        try:
            self._get_client().put_object(**params)
        except Exception as e:
            raise self._translate(e, key, "put") from e

    def get_object(self, key: str) -> StoredObject:
        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            data = response["Body"].read()
        except Exception as e:
            raise self._translate(e, key, "get") from e

        return StoredObject(
            key=key,
            data=data,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            length=response.get("ContentLength", len(data)),
        )

    def open_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ObjectStream:
        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
        except Exception as e:
            raise self._translate(e, key, "get") from e

        return ObjectStream(
            key=key,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            length=response["ContentLength"],
            chunks=_stream_body(response["Body"], chunk_size),
        )

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self._get_client().head_object(Bucket=self.config.bucket, Key=key)
        except Exception as e:
            error = self._translate(e, key, "head")
            if isinstance(error, ObjectNotFoundError):
                return None
            raise error from e
        return ObjectInfo(
            key=key,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            length=response.get("ContentLength", 0),
        )

    def delete_object(self, key: str) -> bool:
        # S3 answers 204 for absent keys too; head first to report not_found
        if self.head_object(key) is None:
            return False
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
        except Exception as e:
            raise self._translate(e, key, "delete") from e
        return True

    def object_url(self, key: str) -> str:
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}/{quote(key)}"
        return f"https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com/{quote(key)}"

    def key_from_url(self, url: str) -> str:
        path = unquote(urlparse(url).path).lstrip("/")
        bucket_prefix = f"{self.config.bucket}/"
        if self.config.endpoint_url and path.startswith(bucket_prefix):
            return path[len(bucket_prefix):]
        return path

    def presigned_put(self, key: str, content_type: str, expires_in: int) -> PresignedUpload:
        try:
            url = self._get_client().generate_presigned_url(
                "put_object",
                Params={"Bucket": self.config.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=expires_in,
                HttpMethod="PUT",
            )
        except Exception as e:
            raise self._translate(e, key, "presign") from e

        return PresignedUpload(
            url=url,
            method="PUT",
            headers={"Content-Type": content_type},
            expires_at=time.time() + expires_in,
        )


class Storage:
    """Universal storage interface.

    Automatically selects the appropriate backend based on configuration and
    applies the CDN rewrite to every public URL.
    """

    def __init__(self, config: Optional[StorageConfig] = None, backend: Optional[StorageBackend] = None):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
            backend: Pre-built backend, mainly for tests
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
                public_base_url=settings.PUBLIC_BASE_URL,
                api_prefix=settings.API_V1_PREFIX,
                signing_key=settings.SECRET_KEY,
            )

        self.config = config
        self.backend = backend or self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    @property
    def cdn_active(self) -> bool:
        return bool(self.config.cdn_enabled and self.config.cdn_domain)

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
        cache_control: Optional[str] = None,
    ) -> None:
        self.backend.put_object(key, data, content_type, cache_control)

    def get_object(self, key: str) -> StoredObject:
        return self.backend.get_object(key)

    def open_object(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ObjectStream:
        return self.backend.open_object(key, chunk_size)

    def head_object(self, key: str) -> Optional[ObjectInfo]:
        return self.backend.head_object(key)

    def delete_object(self, key: str) -> bool:
        return self.backend.delete_object(key)

    def get_url(self, key: str) -> str:
        """Public URL for a key: CDN when configured, else the store's own."""
        if self.cdn_active:
            return f"https://{self.config.cdn_domain}/{quote(key)}"
        return self.backend.object_url(key)

    def key_from_url(self, value: str) -> str:
        """Accept a bare key or any URL this storage produced and return the key."""
        if "://" not in value:
            return value.lstrip("/")
        if self.cdn_active and urlparse(value).netloc == self.config.cdn_domain:
            return unquote(urlparse(value).path).lstrip("/")
        return self.backend.key_from_url(value)

    def presigned_put(self, key: str, content_type: str, expires_in: int) -> PresignedUpload:
        return self.backend.presigned_put(key, content_type, expires_in)
