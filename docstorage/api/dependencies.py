"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be overridden in tests
- Configuration is centralized

The storage client is a process-wide singleton: configuration is resolved
once (at startup, from the lifespan hook) and the same client serves every
request afterwards.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..infrastructure.http.egress import EgressPolicy
from ..infrastructure.storage.client import StorageClient, create_storage_client
from ..infrastructure.storage.config import StorageConfigResolver

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

@lru_cache()
def get_storage_client() -> StorageClient:
    """
    Provide the shared storage client.

    Resolving the configuration raises ConfigurationError on bad settings;
    main.py calls this during startup so that happens before any request.
    For tests, override it with app.dependency_overrides or call
    get_storage_client.cache_clear().
    """
    settings = get_settings()
    policy = EgressPolicy(allowed_ports=settings.egress_allowed_ports_set)

    if settings.storage_mock_mode:
        client = create_storage_client(
            mock_mode=True,
            egress_policy=policy,
            fetch_timeout=settings.remote_fetch_timeout_seconds,
        )
        logger.info("Using shared mock storage client")
        return client

    config = StorageConfigResolver.from_settings(settings).resolve()
    client = create_storage_client(
        config=config,
        egress_policy=policy,
        fetch_timeout=settings.remote_fetch_timeout_seconds,
    )
    logger.info("Created S3 storage client", extra={"bucket": config.bucket_name})

    return client


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
StorageClientDep = Annotated[StorageClient, Depends(get_storage_client)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
