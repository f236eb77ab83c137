"""
Shared test fixtures.
"""

import pytest

from docstorage.infrastructure.storage.client import MockStorageClient
from docstorage.infrastructure.storage.config import StorageConfig, StorageConfigResolver


@pytest.fixture
def mock_storage() -> MockStorageClient:
    """Fresh in-memory storage for each test."""
    return MockStorageClient(public_bucket_url="https://docs-bucket.cdn.example.com")


@pytest.fixture
def storage_config() -> StorageConfig:
    """
    Domain-style config with separate internal and public endpoints,
    so tests can tell which client signed or performed a call.
    """
    return StorageConfigResolver(
        bucket_name="docs-bucket",
        region="us-east-1",
        endpoint="https://s3.us-east-1.amazonaws.com",
        public_endpoint="https://cdn.example.com",
        force_path_style=False,
        access_key_id="test-access-key",
        secret_access_key="test-secret-key",
    ).resolve()
