"""
Storage configuration resolution.

Deployments have configured object storage in several ways over time:
- a plain bucket name + region (endpoint synthesized for AWS)
- a custom endpoint for S3-compatible stores (MinIO, R2, ...)
- a legacy "upload bucket URL" that sometimes had the bucket name baked
  into the host (https://<bucket>.s3.amazonaws.com)
- separate public endpoints (CDN / accelerate URLs) for browser-facing links

StorageConfigResolver collapses all of these into one immutable
StorageConfig at startup. Nothing downstream reads raw settings again.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import SplitResult, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when storage settings are missing or malformed."""
    pass


class AddressingStyle(str, Enum):
    """Where the bucket name goes in object URLs."""
    DOMAIN = "domain"  # https://<bucket>.<host>/<key>
    PATH = "path"      # https://<host>/<bucket>/<key>


@dataclass(frozen=True)
class StorageConfig:
    """
    Resolved, immutable storage configuration.

    Endpoints are base URLs without the bucket name; the bucket is added
    according to addressing_style. public_bucket_url is the bucket-qualified
    public endpoint that object URLs are built from.
    """
    bucket_name: str
    region: str
    internal_endpoint: str
    public_endpoint: str
    addressing_style: AddressingStyle
    public_bucket_url: str
    force_path_style: bool = False
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)

    @property
    def is_path_style(self) -> bool:
        return self.addressing_style is AddressingStyle.PATH


def _parse_url(value: str, setting: str) -> SplitResult:
    """Parse an absolute http(s) URL or fail with ConfigurationError."""
    parts = urlsplit(value.strip())
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(f"{setting} is not a valid http(s) URL: {value!r}")
    if parts.username is not None or parts.password is not None:
        # credentials belong in AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
        raise ConfigurationError(f"{setting} must not contain credentials")
    try:
        parts.port
    except ValueError as e:
        raise ConfigurationError(f"{setting} has an invalid port: {value!r}") from e
    return parts


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _netloc(host: str, port: Optional[int]) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}" if port else host


def _with_host(parts: SplitResult, host: str) -> str:
    netloc = _netloc(host, parts.port)
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def strip_bucket_prefix(url: str, bucket_name: str) -> str:
    """
    Remove a leading "<bucket_name>." label from the URL host.

    Older deployments baked the bucket into the upload URL host; the SDK
    adds it again for domain-style requests, so it has to come off first.
    Idempotent: once stripped the prefix no longer matches.
    """
    parts = _parse_url(url, "bucket URL")
    prefix = f"{bucket_name}."
    if not bucket_name or not parts.hostname.startswith(prefix):
        return url
    return _with_host(parts, parts.hostname[len(prefix):])


def strip_bucket_path(url: str, bucket_name: str) -> str:
    """Remove a trailing "/<bucket_name>" path segment (path-style legacy URLs)."""
    parts = _parse_url(url, "bucket URL")
    path = parts.path.rstrip("/")
    suffix = f"/{bucket_name}"
    if not bucket_name or not path.endswith(suffix):
        return url
    return urlunsplit((parts.scheme, parts.netloc, path[:-len(suffix)], parts.query, parts.fragment))


def bucket_qualified_url(endpoint: str, bucket_name: str, style: AddressingStyle) -> str:
    """Return the endpoint with the bucket added as a host label or path segment."""
    parts = _parse_url(endpoint, "endpoint")
    path = parts.path.rstrip("/")

    if style is AddressingStyle.DOMAIN:
        host = parts.hostname
        if _is_ip_literal(host):
            raise ConfigurationError(
                f"Domain-style addressing needs a host name, not an IP address: {endpoint!r}"
            )
        if not host.startswith(f"{bucket_name}."):
            host = f"{bucket_name}.{host}"
        return urlunsplit((parts.scheme, _netloc(host, parts.port), path, "", ""))

    if not path.endswith(f"/{bucket_name}"):
        path = f"{path}/{bucket_name}"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


@dataclass
class StorageConfigResolver:
    """
    Raw storage settings, as found in the environment.

    Every field is optional; resolve() decides precedence and fails fast
    with ConfigurationError when the result would be unusable.
    """
    bucket_name: Optional[str] = None
    region: str = ""
    service: str = "s3"
    provider: str = "amazonaws.com"
    endpoint: Optional[str] = None
    public_endpoint: Optional[str] = None
    accelerate_url: Optional[str] = None
    upload_bucket_url: Optional[str] = None
    upload_bucket_name: Optional[str] = None
    endpoint_style: Optional[str] = None
    force_path_style: Optional[bool] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "StorageConfigResolver":
        """Build a resolver from application Settings."""
        return cls(
            bucket_name=settings.aws_s3_bucket_name,
            region=settings.aws_region,
            service=settings.aws_service,
            provider=settings.aws_s3_provider,
            endpoint=settings.aws_s3_endpoint,
            public_endpoint=settings.aws_s3_public_endpoint,
            accelerate_url=settings.aws_s3_accelerate_url,
            upload_bucket_url=settings.aws_s3_upload_bucket_url,
            upload_bucket_name=settings.aws_s3_upload_bucket_name,
            endpoint_style=settings.aws_s3_endpoint_style,
            force_path_style=settings.aws_s3_force_path_style,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )

    def resolve(self) -> StorageConfig:
        bucket_name = (self.bucket_name or self.upload_bucket_name or "").strip()
        if not bucket_name:
            raise ConfigurationError(
                "A bucket name is required (AWS_S3_BUCKET_NAME or AWS_S3_UPLOAD_BUCKET_NAME)"
            )

        legacy_name = (self.upload_bucket_name or "").strip()
        upload_url = self._optional_url(self.upload_bucket_url, "AWS_S3_UPLOAD_BUCKET_URL")
        accelerate_url = self._optional_url(self.accelerate_url, "AWS_S3_ACCELERATE_URL")
        if legacy_name:
            if upload_url:
                upload_url = strip_bucket_prefix(upload_url, legacy_name)
            if accelerate_url:
                accelerate_url = strip_bucket_prefix(accelerate_url, legacy_name)

        custom_endpoint = self._optional_url(self.endpoint, "AWS_S3_ENDPOINT")
        if custom_endpoint:
            internal_endpoint = custom_endpoint
            configured_host = _parse_url(custom_endpoint, "AWS_S3_ENDPOINT").hostname
        elif upload_url:
            internal_endpoint = upload_url
            # containment is checked on the URL as configured, before the rewrite
            configured_host = _parse_url(self.upload_bucket_url, "AWS_S3_UPLOAD_BUCKET_URL").hostname
        else:
            internal_endpoint = self._synthesized_endpoint()
            configured_host = None

        style = self._addressing_style(bucket_name, configured_host)

        public_endpoint = (
            self._optional_url(self.public_endpoint, "AWS_S3_PUBLIC_ENDPOINT")
            or accelerate_url
            or internal_endpoint
        )

        if style is AddressingStyle.DOMAIN:
            internal_endpoint = strip_bucket_prefix(internal_endpoint, bucket_name)
            public_endpoint = strip_bucket_prefix(public_endpoint, bucket_name)
        else:
            internal_endpoint = strip_bucket_path(internal_endpoint, bucket_name)
            public_endpoint = strip_bucket_path(public_endpoint, bucket_name)

        config = StorageConfig(
            bucket_name=bucket_name,
            region=self.region or "",
            internal_endpoint=internal_endpoint.rstrip("/"),
            public_endpoint=public_endpoint.rstrip("/"),
            addressing_style=style,
            public_bucket_url=bucket_qualified_url(public_endpoint, bucket_name, style),
            force_path_style=style is AddressingStyle.PATH,
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
        )

        logger.info(
            "Resolved storage configuration",
            extra={
                "bucket": config.bucket_name,
                "region": config.region,
                "endpoint": config.internal_endpoint,
                "public_endpoint": config.public_endpoint,
                "addressing_style": config.addressing_style.value,
            }
        )

        return config

    def _optional_url(self, value: Optional[str], setting: str) -> Optional[str]:
        if not value or not value.strip():
            return None
        _parse_url(value, setting)
        return value.strip()

    def _synthesized_endpoint(self) -> str:
        labels = [self.service, self.region, self.provider]
        host = ".".join(label for label in labels if label)
        url = f"https://{host}"
        _parse_url(url, "synthesized endpoint")
        return url

    def _addressing_style(
        self,
        bucket_name: str,
        configured_host: Optional[str],
    ) -> AddressingStyle:
        """
        Explicit settings win. Otherwise a configured endpoint whose host
        contains the bucket name is treated as domain-style, one that does
        not as path-style. A synthesized endpoint uses domain-style.

        The containment check is a plain substring test, matching what
        existing deployments were configured against.
        """
        if self.endpoint_style:
            try:
                return AddressingStyle(self.endpoint_style.strip().lower())
            except ValueError as e:
                raise ConfigurationError(
                    f"AWS_S3_ENDPOINT_STYLE must be 'domain' or 'path', got {self.endpoint_style!r}"
                ) from e

        if self.force_path_style is not None:
            return AddressingStyle.PATH if self.force_path_style else AddressingStyle.DOMAIN

        if configured_host is None:
            return AddressingStyle.DOMAIN

        if bucket_name in configured_host:
            return AddressingStyle.DOMAIN
        return AddressingStyle.PATH


def resolve_storage_config(settings) -> StorageConfig:
    """Resolve StorageConfig from application Settings."""
    return StorageConfigResolver.from_settings(settings).resolve()
