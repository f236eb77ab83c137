"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

The AWS_* names match the variables older deployments already set, so
existing .env files keep working. Several of them overlap; the storage
resolver (infrastructure/storage/config.py) turns them into one coherent
StorageConfig.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Docstorage API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )

    # Object storage: bucket and region
    aws_s3_bucket_name: Optional[str] = Field(
        default=None,
        description="Target bucket. Falls back to AWS_S3_UPLOAD_BUCKET_NAME for older deployments."
    )
    aws_region: str = Field(
        default="",
        description="Bucket region. Used for the synthesized endpoint and request signing."
    )
    aws_service: str = Field(
        default="s3",
        description="Service label used when synthesizing the endpoint host."
    )
    aws_s3_provider: str = Field(
        default="amazonaws.com",
        description="Provider domain suffix used when synthesizing the endpoint host."
    )
    aws_access_key_id: Optional[str] = Field(
        default=None,
        description="Access key ID passed to boto3"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None,
        description="Secret access key passed to boto3"
    )

    # Object storage: endpoints
    aws_s3_endpoint: Optional[str] = Field(
        default=None,
        description="Custom endpoint for server-side operations (MinIO, R2, ...)."
    )
    aws_s3_public_endpoint: Optional[str] = Field(
        default=None,
        description="Endpoint used in URLs handed to browsers. Defaults to the internal endpoint."
    )
    aws_s3_accelerate_url: Optional[str] = Field(
        default=None,
        description="Accelerated/CDN URL, used as the public endpoint when no override is set."
    )
    aws_s3_endpoint_style: Optional[str] = Field(
        default=None,
        description="Explicit addressing style: 'domain' or 'path'."
    )
    aws_s3_force_path_style: Optional[bool] = Field(
        default=None,
        description="Force path-style addressing (bucket in the URL path instead of the host)."
    )

    # Object storage: legacy settings kept for backward compatibility
    aws_s3_upload_bucket_url: Optional[str] = Field(
        default=None,
        description="Legacy upload bucket URL. May have the bucket name baked into the host."
    )
    aws_s3_upload_bucket_name: Optional[str] = Field(
        default=None,
        description="Legacy upload bucket name."
    )

    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory storage instead of S3. Enables local dev without object storage."
    )

    # Application Behavior
    max_upload_size_mb: int = Field(
        default=25,
        description="Maximum size of a direct browser upload in MB."
    )
    remote_fetch_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for importing files from remote URLs."
    )
    egress_allowed_ports: str = Field(
        default="80,443",
        description="Comma-separated ports remote imports may connect to."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("egress_allowed_ports")
    @classmethod
    def validate_egress_ports(cls, value: str) -> str:
        """Reject anything but a comma-separated list of TCP ports."""
        ports = [port.strip() for port in value.split(",") if port.strip()]
        if not ports:
            raise ValueError("at least one port is required")
        for port in ports:
            if not port.isdigit() or not 1 <= int(port) <= 65535:
                raise ValueError(f"invalid port {port!r}; expected comma-separated numbers 1-65535")
        return value

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def egress_allowed_ports_set(self) -> frozenset[int]:
        """Parse comma-separated egress ports into a set."""
        return frozenset(
            int(port.strip()) for port in self.egress_allowed_ports.split(",") if port.strip()
        )

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on whether we're in mock mode.
        """
        missing = []

        if self.storage_mock_mode:
            return missing

        if not (self.aws_s3_bucket_name or self.aws_s3_upload_bucket_name):
            missing.append("AWS_S3_BUCKET_NAME")
        if not self.aws_access_key_id:
            missing.append("AWS_ACCESS_KEY_ID")
        if not self.aws_secret_access_key:
            missing.append("AWS_SECRET_ACCESS_KEY")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
