"""
Object storage integration for document attachments and exports.

Supports AWS S3 and S3-compatible stores via boto3.
Includes mock mode for local development without credentials.
"""

from .client import (
    MockStorageClient,
    ObjectStream,
    PresignedPost,
    S3StorageClient,
    StorageClient,
    StorageError,
    UploadDescriptor,
    create_storage_client,
    issue_export_key,
    issue_key,
)
from .config import (
    AddressingStyle,
    ConfigurationError,
    StorageConfig,
    StorageConfigResolver,
    resolve_storage_config,
)

__all__ = [
    "AddressingStyle",
    "ConfigurationError",
    "MockStorageClient",
    "ObjectStream",
    "PresignedPost",
    "S3StorageClient",
    "StorageClient",
    "StorageConfig",
    "StorageConfigResolver",
    "StorageError",
    "UploadDescriptor",
    "create_storage_client",
    "issue_export_key",
    "issue_key",
    "resolve_storage_config",
]
