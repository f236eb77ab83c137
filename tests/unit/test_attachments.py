"""
Unit tests for attachment references in document text.
"""

import pytest

from docstorage.core.attachments import (
    ATTACHMENT_REDIRECT_MARKER,
    attachment_redirect_url,
    parse_attachment_keys,
    sign_attachment_urls,
)

KEY = "uploads/user-1/0b7c2f5e-3a8e-4a55-9d43-6f1f6f3e2a10/report.pdf"


class TestRedirectReferences:
    """Tests for building and finding redirect references."""

    def test_redirect_url_format(self):
        assert attachment_redirect_url(KEY) == f"/api/v1/attachments.redirect?key={KEY}"

    def test_redirect_url_quotes_unsafe_characters(self):
        url = attachment_redirect_url("uploads/u/1/my report.pdf")
        assert url.endswith("?key=uploads/u/1/my%20report.pdf")

    def test_parse_finds_keys_in_markdown(self):
        text = (
            f"See [report]({attachment_redirect_url(KEY)}) and "
            f"![chart]({attachment_redirect_url('uploads/u/2/chart.png')})"
        )

        assert parse_attachment_keys(text) == [KEY, "uploads/u/2/chart.png"]

    def test_parse_deduplicates_and_unquotes(self):
        ref = attachment_redirect_url("uploads/u/1/my report.pdf")
        text = f"[a]({ref}) [b]({ref})"

        assert parse_attachment_keys(text) == ["uploads/u/1/my report.pdf"]

    def test_parse_ignores_plain_text(self):
        assert parse_attachment_keys("nothing to see at /api/v1/attachments.list") == []


class TestSignAttachmentUrls:
    """Tests for rewriting references to signed URLs."""

    @pytest.mark.asyncio
    async def test_reference_replaced_with_signed_url_and_marker(self, mock_storage):
        text = f"[report]({attachment_redirect_url(KEY)})"

        signed = await sign_attachment_urls(text, mock_storage)

        expected_url = (
            f"https://docs-bucket.cdn.example.com/{KEY}"
            "?response-content-disposition=attachment&expires=3600"
        )
        assert signed == f"[report]({expected_url}{ATTACHMENT_REDIRECT_MARKER})"
        assert "/api/v1/attachments.redirect" not in signed

    @pytest.mark.asyncio
    async def test_every_occurrence_is_replaced(self, mock_storage):
        ref = attachment_redirect_url(KEY)
        text = f"[one]({ref})\n\n[two]({ref})"

        signed = await sign_attachment_urls(text, mock_storage)

        assert signed.count(ATTACHMENT_REDIRECT_MARKER) == 2
        assert ref not in signed

    @pytest.mark.asyncio
    async def test_reference_that_prefixes_another(self, mock_storage):
        """A key that is a prefix of another key does not corrupt the longer one."""
        short = attachment_redirect_url("uploads/u/1/a")
        long = attachment_redirect_url("uploads/u/1/ab")
        text = f"[s]({short}) [l]({long})"

        signed = await sign_attachment_urls(text, mock_storage)

        assert "/uploads/u/1/a?" in signed
        assert "/uploads/u/1/ab?" in signed
        assert signed.count(ATTACHMENT_REDIRECT_MARKER) == 2

    @pytest.mark.asyncio
    async def test_custom_expiry(self, mock_storage):
        signed = await sign_attachment_urls(attachment_redirect_url(KEY), mock_storage, expires_in=120)
        assert "expires=120" in signed

    @pytest.mark.asyncio
    async def test_text_without_references_is_unchanged(self, mock_storage):
        text = "# Notes\n\nPlain [link](https://example.com)."
        assert await sign_attachment_urls(text, mock_storage) == text

    @pytest.mark.asyncio
    async def test_signing_is_stable_on_signed_text(self, mock_storage):
        """Already signed text has no references left to rewrite."""
        once = await sign_attachment_urls(attachment_redirect_url(KEY), mock_storage)
        assert await sign_attachment_urls(once, mock_storage) == once
