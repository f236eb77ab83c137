"""
Attachment references inside document text.

Documents link attachments through the app's redirect endpoint
(/api/v1/attachments.redirect?key=...), which signs a URL on every click.
Publicly shared documents are read without an API key, so before such a
document is handed out every redirect reference is swapped for a signed
URL directly.

The signed URL is followed by the "# attachments.redirect" marker so
clients that detect attachments by that string keep recognising them.
"""

import asyncio
import logging
import re
from urllib.parse import quote, unquote

from ..infrastructure.storage.client import StorageClient

logger = logging.getLogger(__name__)

ATTACHMENT_REDIRECT_PATH = "/api/v1/attachments.redirect"
ATTACHMENT_REDIRECT_MARKER = "# attachments.redirect"
SIGNED_ATTACHMENT_EXPIRY_SECONDS = 3600

_REDIRECT_PATTERN = re.compile(
    re.escape(ATTACHMENT_REDIRECT_PATH) + r"\?key=([^\s)\"'<>#]+)"
)


def attachment_redirect_url(key: str) -> str:
    """Reference to an attachment as stored in document text."""
    return f"{ATTACHMENT_REDIRECT_PATH}?key={quote(key, safe='/')}"


def parse_attachment_keys(text: str) -> list[str]:
    """Keys referenced by the text, in order of first appearance."""
    keys: list[str] = []
    for match in _REDIRECT_PATTERN.finditer(text):
        key = unquote(match.group(1))
        if key not in keys:
            keys.append(key)
    return keys


async def sign_attachment_urls(
    text: str,
    storage: StorageClient,
    expires_in: int = SIGNED_ATTACHMENT_EXPIRY_SECONDS,
) -> str:
    """Replace attachment redirect references with signed URLs."""
    matches = {match.group(0): unquote(match.group(1)) for match in _REDIRECT_PATTERN.finditer(text)}
    if not matches:
        return text

    references = list(matches)
    signed_urls = await asyncio.gather(
        *(storage.get_signed_url(matches[ref], expires_in) for ref in references)
    )

    # longest first, so a reference that prefixes another is not replaced inside it
    for reference, signed_url in sorted(
        zip(references, signed_urls), key=lambda pair: len(pair[0]), reverse=True
    ):
        text = text.replace(reference, f"{signed_url}{ATTACHMENT_REDIRECT_MARKER}")

    logger.debug("Signed attachment URLs", extra={"count": len(references)})

    return text
