"""
Object storage client for document attachments and exports.

Supports any S3-compatible store (AWS S3, MinIO, R2, ...) via boto3, with
mock mode for local development.

All addressing details (domain vs path style, internal vs public endpoint)
are settled once by StorageConfigResolver; this module only performs I/O
against the resolved StorageConfig. Callers never special-case addressing.

Two read operations exist on purpose:
- get_object_stream() is best-effort: failures are logged and None is
  returned, because render paths have a fallback.
- get_object_buffer() raises StorageError, because its callers cannot
  proceed without the bytes.

Mock mode stores objects in memory, enabling API testing without
provisioning actual object storage.
"""

import asyncio
import io
from abc import ABC, abstractmethod
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, BinaryIO, Optional, Protocol, Union
from uuid import uuid4

import boto3
import httpx
from botocore.config import Config

from ..http.egress import EgressPolicy, fetch_remote_object
from .config import StorageConfig

logger = logging.getLogger(__name__)

PRESIGNED_POST_EXPIRY_SECONDS = 3600
DEFAULT_SIGNED_URL_EXPIRY_SECONDS = 60
STREAM_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


@dataclass(frozen=True)
class UploadDescriptor:
    """A single object write. Built per call, never persisted."""
    key: str
    acl: str
    content_type: str
    content_length: int
    body: Union[bytes, str]

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return self.body


@dataclass
class PresignedPost:
    """
    Everything a browser needs to upload straight to the bucket.

    The form posts `fields` (plus the file) to `url`; `conditions` are the
    policy constraints the store enforces.
    """
    url: str
    fields: dict[str, str]
    conditions: list[Any] = field(default_factory=list)


class ObjectStream:
    """
    Async reader over a stored object's body.

    Reads run in a worker thread so a slow store never blocks the event
    loop. Iterate for chunks, or read() for everything.
    """

    def __init__(
        self,
        body: BinaryIO,
        content_type: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> None:
        self._body = body
        self.content_type = content_type
        self.content_length = content_length

    async def read(self) -> bytes:
        return await asyncio.to_thread(self._body.read)

    async def iter_chunks(self, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(self._body.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    def close(self) -> None:
        self._body.close()


def issue_key(namespace: str, owner_id: str, file_label: str) -> str:
    """
    Build a fresh object key: {namespace}/{owner_id}/{uuid}/{file_label}.

    The uuid makes every key unique, so keys are never reused or
    overwritten. Pure; no I/O.
    """
    return f"{namespace}/{owner_id}/{uuid4()}/{file_label}"


def issue_export_key(team_id: str, name: str) -> str:
    """Key for a team export archive. Export objects are always private."""
    return issue_key("uploads", team_id, f"{name}-export.zip")


def presigned_post_policy(
    key: str,
    acl: str,
    max_size: int,
    content_type_prefix: str = "image",
) -> tuple[dict[str, str], list[Any]]:
    """
    Fields and policy conditions for a direct browser upload.

    Every field posted by the form needs a matching condition, otherwise
    the store rejects the upload as having extra input fields.
    """
    fields = {
        "key": key,
        "acl": acl,
        "Content-Disposition": "attachment",
    }
    conditions: list[Any] = [
        {"acl": acl},
        {"Content-Disposition": "attachment"},
        ["content-length-range", 0, max_size],
        ["starts-with", "$Content-Type", content_type_prefix],
        ["starts-with", "$Cache-Control", ""],
    ]
    return fields, conditions


class StorageClient(Protocol):
    """
    Protocol for object storage operations.

    Using a protocol means tests can provide mocks and we can
    swap storage backends without changing dependent code.
    """

    @property
    def public_bucket_url(self) -> str:
        """Bucket-qualified public URL that object URLs start with."""
        ...

    def public_url(self, key: str) -> str:
        """Public URL of an object."""
        ...

    async def create_presigned_upload(
        self,
        key: str,
        acl: str,
        max_size: int,
        content_type_prefix: str = "image",
    ) -> PresignedPost:
        """Build a presigned POST for a direct browser upload."""
        ...

    async def upload(self, descriptor: UploadDescriptor) -> str:
        """Write an object and return its public URL."""
        ...

    async def upload_from_remote_url(
        self,
        source_url: str,
        key: str,
        acl: str,
    ) -> Optional[str]:
        """Copy a remote file into the bucket. Best-effort."""
        ...

    async def get_signed_url(
        self,
        key: str,
        expires_in: int = DEFAULT_SIGNED_URL_EXPIRY_SECONDS,
    ) -> str:
        """Generate a time-limited download URL."""
        ...

    async def get_object_stream(self, key: str) -> Optional[ObjectStream]:
        """Open a streaming read. Best-effort."""
        ...

    async def get_object_buffer(self, key: str) -> bytes:
        """Read a whole object."""
        ...

    async def delete(self, key: str) -> None:
        """Delete an object."""
        ...


class BaseStorageClient(ABC):
    """
    Behaviour shared by every backend: public URL building and the
    remote-URL import, which is just a guarded fetch followed by upload().
    """

    def __init__(
        self,
        public_bucket_url: str,
        public_endpoint: Optional[str] = None,
        egress_policy: Optional[EgressPolicy] = None,
        fetch_timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._public_bucket_url = public_bucket_url.rstrip("/")
        self._public_endpoint = (public_endpoint or public_bucket_url).rstrip("/")
        self._egress_policy = egress_policy or EgressPolicy()
        self._fetch_timeout = fetch_timeout
        self._http_transport = http_transport

    @property
    def public_bucket_url(self) -> str:
        return self._public_bucket_url

    def public_url(self, key: str) -> str:
        return f"{self._public_bucket_url}/{key}"

    @abstractmethod
    async def upload(self, descriptor: UploadDescriptor) -> str:
        """Write an object and return its public URL."""
        ...

    def _is_own_url(self, url: str) -> bool:
        """True for URLs served by this app or already in this bucket."""
        return (
            url.startswith("/api")
            or url.startswith(self._public_bucket_url)
            or url.startswith(self._public_endpoint)
        )

    async def upload_from_remote_url(
        self,
        source_url: str,
        key: str,
        acl: str,
    ) -> Optional[str]:
        """
        Copy a remote file into the bucket under `key`.

        Skips URLs that already point at this app or this bucket, so
        re-saving a document never copies its own attachments again.

        The fetch goes through the egress filter; the body is fully
        buffered before the write. Any failure is logged and None is
        returned: the document simply keeps its original reference.
        """
        if self._is_own_url(source_url):
            logger.debug(
                "Skipping import of local URL",
                extra={"url": source_url, "key": key}
            )
            return None

        try:
            remote = await fetch_remote_object(
                source_url,
                policy=self._egress_policy,
                timeout=self._fetch_timeout,
                transport=self._http_transport,
            )

            return await self.upload(
                UploadDescriptor(
                    key=key,
                    acl=acl,
                    content_type=remote.content_type,
                    content_length=remote.content_length,
                    body=remote.body,
                )
            )

        except Exception as e:
            logger.error(
                "Error uploading to storage from URL",
                extra={
                    "url": source_url,
                    "key": key,
                    "acl": acl,
                    "error": str(e),
                }
            )
            return None


class S3StorageClient(BaseStorageClient):
    """
    S3-compatible object storage client.

    Holds two boto3 clients built from the same StorageConfig:
    - the internal client performs reads, writes and deletes
    - the public client only signs URLs handed to browsers, so the
      signature is computed for the host the browser will actually hit

    boto3 is synchronous; every call runs in a worker thread so the event
    loop is never blocked. The clients keep no per-request state and are
    safe to share across concurrent requests.
    """

    def __init__(
        self,
        config: StorageConfig,
        egress_policy: Optional[EgressPolicy] = None,
        fetch_timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            public_bucket_url=config.public_bucket_url,
            public_endpoint=config.public_endpoint,
            egress_policy=egress_policy,
            fetch_timeout=fetch_timeout,
            http_transport=http_transport,
        )
        self._config = config

        boto_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path" if config.is_path_style else "virtual"},
        )
        client_kwargs: dict[str, Any] = {
            "region_name": config.region or None,
            "config": boto_config,
        }
        if config.access_key_id and config.secret_access_key:
            client_kwargs["aws_access_key_id"] = config.access_key_id
            client_kwargs["aws_secret_access_key"] = config.secret_access_key

        self._s3_client = boto3.client(
            "s3",
            endpoint_url=config.internal_endpoint,
            **client_kwargs,
        )
        self._public_client = boto3.client(
            "s3",
            endpoint_url=config.public_endpoint,
            **client_kwargs,
        )

        logger.info(
            "Initialized S3 storage client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.internal_endpoint,
                "public_endpoint": config.public_endpoint,
            }
        )

    async def create_presigned_upload(
        self,
        key: str,
        acl: str,
        max_size: int,
        content_type_prefix: str = "image",
    ) -> PresignedPost:
        """
        Presigned POST limited to 0..max_size bytes and a content type
        starting with `content_type_prefix`. Valid for one hour.
        """
        fields, conditions = presigned_post_policy(key, acl, max_size, content_type_prefix)

        try:
            response = await asyncio.to_thread(
                self._public_client.generate_presigned_post,
                Bucket=self._config.bucket_name,
                Key=key,
                Fields=dict(fields),
                Conditions=list(conditions),
                ExpiresIn=PRESIGNED_POST_EXPIRY_SECONDS,
            )
        except Exception as e:
            logger.error(
                "Failed to generate presigned post",
                extra={"key": key, "acl": acl, "error": str(e)}
            )
            raise StorageError(f"Presigned post generation failed: {e}") from e

        return PresignedPost(
            url=response["url"],
            fields=response["fields"],
            conditions=conditions,
        )

    async def upload(self, descriptor: UploadDescriptor) -> str:
        """
        Write an object and return its public URL.

        Not retried here; retry policy belongs to the caller.
        """
        try:
            await asyncio.to_thread(
                self._s3_client.put_object,
                ACL=descriptor.acl,
                Bucket=self._config.bucket_name,
                Key=descriptor.key,
                ContentType=descriptor.content_type,
                ContentLength=descriptor.content_length,
                ContentDisposition="attachment",
                Body=descriptor.body_bytes,
            )
        except Exception as e:
            logger.error(
                "Failed to upload object",
                extra={"key": descriptor.key, "acl": descriptor.acl, "error": str(e)}
            )
            raise StorageError(f"Upload failed: {e}") from e

        logger.debug(
            "Uploaded object",
            extra={"key": descriptor.key, "size_bytes": descriptor.content_length}
        )

        return self.public_url(descriptor.key)

    async def get_signed_url(
        self,
        key: str,
        expires_in: int = DEFAULT_SIGNED_URL_EXPIRY_SECONDS,
    ) -> str:
        """
        Time-limited GET URL on the public endpoint. The response always
        carries Content-Disposition: attachment so browsers download
        rather than render user-uploaded content.
        """
        try:
            return await asyncio.to_thread(
                self._public_client.generate_presigned_url,
                "get_object",
                Params={
                    "Bucket": self._config.bucket_name,
                    "Key": key,
                    "ResponseContentDisposition": "attachment",
                },
                ExpiresIn=expires_in,
            )
        except Exception as e:
            logger.error(
                "Failed to generate signed URL",
                extra={"key": key, "error": str(e)}
            )
            raise StorageError(f"Signed URL generation failed: {e}") from e

    async def get_object_stream(self, key: str) -> Optional[ObjectStream]:
        try:
            response = await asyncio.to_thread(
                self._s3_client.get_object,
                Bucket=self._config.bucket_name,
                Key=key,
            )
        except Exception as e:
            logger.error(
                "Error getting file from storage by key",
                extra={"key": key, "error": str(e)}
            )
            return None

        body = response.get("Body")
        if body is None:
            logger.error("Stored object has no body", extra={"key": key})
            return None

        return ObjectStream(
            body,
            content_type=response.get("ContentType"),
            content_length=response.get("ContentLength"),
        )

    async def get_object_buffer(self, key: str) -> bytes:
        try:
            response = await asyncio.to_thread(
                self._s3_client.get_object,
                Bucket=self._config.bucket_name,
                Key=key,
            )
            body = response.get("Body")
            if body is None:
                raise StorageError(f"Object has no body: {key}")
            return await asyncio.to_thread(body.read)
        except StorageError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read object",
                extra={"key": key, "error": str(e)}
            )
            raise StorageError(f"Download failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self._s3_client.delete_object,
                Bucket=self._config.bucket_name,
                Key=key,
            )
        except Exception as e:
            logger.error(
                "Failed to delete object",
                extra={"key": key, "error": str(e)}
            )
            raise StorageError(f"Delete failed: {e}") from e

        logger.info("Deleted object", extra={"key": key})


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

@dataclass
class StoredObject:
    body: bytes
    content_type: str
    acl: str


class MockStorageClient(BaseStorageClient):
    """
    In-memory storage for local development.

    This mock enables testing the full API flow without provisioning
    real object storage. Objects are kept in a dictionary and URLs are
    mock URIs. Remote imports still go through the egress filter.

    Not suitable for production, but perfect for development and testing.
    """

    def __init__(
        self,
        public_bucket_url: str = "mock://storage/uploads",
        egress_policy: Optional[EgressPolicy] = None,
        fetch_timeout: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            public_bucket_url=public_bucket_url,
            egress_policy=egress_policy,
            fetch_timeout=fetch_timeout,
            http_transport=http_transport,
        )
        self._objects: dict[str, StoredObject] = {}
        logger.info("Initialized mock storage client (in-memory)")

    def __contains__(self, key: str) -> bool:
        return key in self._objects

    async def create_presigned_upload(
        self,
        key: str,
        acl: str,
        max_size: int,
        content_type_prefix: str = "image",
    ) -> PresignedPost:
        fields, conditions = presigned_post_policy(key, acl, max_size, content_type_prefix)
        return PresignedPost(
            url=self.public_bucket_url,
            fields={**fields, "policy": "mock"},
            conditions=conditions,
        )

    async def upload(self, descriptor: UploadDescriptor) -> str:
        self._objects[descriptor.key] = StoredObject(
            body=descriptor.body_bytes,
            content_type=descriptor.content_type,
            acl=descriptor.acl,
        )

        logger.debug(
            "Stored object in mock storage",
            extra={"key": descriptor.key, "size_bytes": descriptor.content_length}
        )

        return self.public_url(descriptor.key)

    async def get_signed_url(
        self,
        key: str,
        expires_in: int = DEFAULT_SIGNED_URL_EXPIRY_SECONDS,
    ) -> str:
        return (
            f"{self.public_url(key)}"
            f"?response-content-disposition=attachment&expires={expires_in}"
        )

    async def get_object_stream(self, key: str) -> Optional[ObjectStream]:
        stored = self._objects.get(key)
        if stored is None:
            logger.error("Error getting file from storage by key", extra={"key": key})
            return None

        return ObjectStream(
            io.BytesIO(stored.body),
            content_type=stored.content_type,
            content_length=len(stored.body),
        )

    async def get_object_buffer(self, key: str) -> bytes:
        stored = self._objects.get(key)
        if stored is None:
            raise StorageError(f"Object not found: {key}")
        return stored.body

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
    egress_policy: Optional[EgressPolicy] = None,
    fetch_timeout: float = 30.0,
) -> StorageClient:
    """
    Create storage client based on configuration.

    Args:
        config: Resolved storage configuration (required if not mock_mode)
        mock_mode: If True, return in-memory client for testing
        egress_policy: Destinations remote imports may reach
        fetch_timeout: Timeout for remote imports, in seconds

    Returns:
        StorageClient implementation (S3 or Mock)
    """
    if mock_mode:
        public_bucket_url = config.public_bucket_url if config else "mock://storage/uploads"
        return MockStorageClient(
            public_bucket_url=public_bucket_url,
            egress_policy=egress_policy,
            fetch_timeout=fetch_timeout,
        )

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return S3StorageClient(
        config,
        egress_policy=egress_policy,
        fetch_timeout=fetch_timeout,
    )
