"""
Attachment API endpoints.

Browsers never send file bytes through this service:
1. attachments.create returns a presigned POST form for the bucket
2. the browser uploads directly to the store
3. documents reference the file via attachments.redirect, which signs a
   short-lived URL on every request

Importing from a remote URL (pasted images) and streaming downloads are
the only paths where bytes pass through the server.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import RedirectResponse, StreamingResponse
from pydantic import BaseModel, Field

from ...core.attachments import attachment_redirect_url, sign_attachment_urls
from ...infrastructure.storage.client import StorageError, issue_key
from ..dependencies import AuthenticatedUser, SettingsDep, StorageClientDep

logger = logging.getLogger(__name__)

router = APIRouter()

ATTACHMENT_NAMESPACE = "uploads"


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class CreateAttachmentRequest(BaseModel):
    """Request for a direct upload form."""
    name: str = Field(min_length=1, max_length=255, description="File name")
    owner_id: str = Field(min_length=1, description="User the attachment belongs to")
    content_type: str = Field(default="application/octet-stream", description="MIME type of the file")
    size: int = Field(ge=0, description="File size in bytes")
    acl: str = Field(default="private", description="Canned ACL for the stored object")


class AttachmentInfo(BaseModel):
    key: str = Field(description="Storage key")
    name: str = Field(description="File name")
    url: str = Field(description="Reference to embed in document text")


class CreateAttachmentResponse(BaseModel):
    """Direct upload form plus the reference to use once uploaded."""
    upload_url: str = Field(description="URL the form posts to")
    form: dict[str, str] = Field(description="Fields to post with the file")
    conditions: list[Any] = Field(description="Policy constraints enforced by the store")
    attachment: AttachmentInfo


class ImportAttachmentRequest(BaseModel):
    """Copy a remote file into storage."""
    url: str = Field(min_length=1, description="Remote URL to fetch")
    owner_id: str = Field(min_length=1, description="User the attachment belongs to")
    name: str = Field(min_length=1, max_length=255, description="File name")
    acl: str = Field(default="private", description="Canned ACL for the stored object")


class ImportAttachmentResponse(BaseModel):
    url: Optional[str] = Field(description="Public URL, or null when skipped or failed")
    key: str = Field(description="Storage key used for the import")


class DeleteAttachmentRequest(BaseModel):
    key: str = Field(min_length=1)


class SignTextRequest(BaseModel):
    text: str = Field(description="Document text containing attachment references")


class SignTextResponse(BaseModel):
    text: str = Field(description="Document text with signed attachment URLs")


def attachment_disposition(filename: str) -> str:
    """
    Content-Disposition for a download.

    Header values must be latin-1, so the real name goes in the RFC 5987
    filename* parameter and filename= carries a printable ASCII fallback.
    """
    fallback = "".join(
        char for char in filename
        if " " <= char <= "~" and char not in '"\\'
    ).strip() or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/attachments.create",
    response_model=CreateAttachmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a direct upload form",
)
async def create_attachment(
    request: CreateAttachmentRequest,
    storage: StorageClientDep,
    settings: SettingsDep,
    _api_key: AuthenticatedUser,
) -> CreateAttachmentResponse:
    """
    Issue a fresh key and a presigned POST limited to the configured
    upload size and the file's content type.
    """
    max_size = settings.max_upload_size_bytes
    if request.size > max_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the maximum upload size of {settings.max_upload_size_mb} MB",
        )

    key = issue_key(ATTACHMENT_NAMESPACE, request.owner_id, request.name)

    try:
        presigned = await storage.create_presigned_upload(
            key,
            request.acl,
            max_size,
            content_type_prefix=request.content_type,
        )
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    logger.info(
        "Created attachment upload",
        extra={"key": key, "owner_id": request.owner_id, "size": request.size}
    )

    return CreateAttachmentResponse(
        upload_url=presigned.url,
        form=presigned.fields,
        conditions=presigned.conditions,
        attachment=AttachmentInfo(
            key=key,
            name=request.name,
            url=attachment_redirect_url(key),
        ),
    )


@router.get(
    "/attachments.redirect",
    status_code=status.HTTP_302_FOUND,
    summary="Redirect to a signed download URL",
)
async def redirect_attachment(
    storage: StorageClientDep,
    _api_key: AuthenticatedUser,
    key: str = Query(min_length=1),
) -> RedirectResponse:
    try:
        signed_url = await storage.get_signed_url(key)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return RedirectResponse(signed_url, status_code=status.HTTP_302_FOUND)


@router.get(
    "/attachments.download",
    summary="Stream an attachment through the API",
)
async def download_attachment(
    storage: StorageClientDep,
    _api_key: AuthenticatedUser,
    key: str = Query(min_length=1),
) -> StreamingResponse:
    stream = await storage.get_object_stream(key)
    if stream is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")

    try:
        headers = {"Content-Disposition": attachment_disposition(key.rsplit("/", 1)[-1])}
        if stream.content_length is not None:
            headers["Content-Length"] = str(stream.content_length)

        return StreamingResponse(
            stream,
            media_type=stream.content_type or "application/octet-stream",
            headers=headers,
        )
    except Exception:
        stream.close()
        raise


@router.post(
    "/attachments.import",
    response_model=ImportAttachmentResponse,
    summary="Import a remote file",
)
async def import_attachment(
    request: ImportAttachmentRequest,
    storage: StorageClientDep,
    _api_key: AuthenticatedUser,
) -> ImportAttachmentResponse:
    """
    Best-effort copy of a remote file. url is null when the source
    already lives here or the import failed.
    """
    key = issue_key(ATTACHMENT_NAMESPACE, request.owner_id, request.name)
    url = await storage.upload_from_remote_url(request.url, key, request.acl)
    return ImportAttachmentResponse(url=url, key=key)


@router.post(
    "/attachments.delete",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an attachment",
)
async def delete_attachment(
    request: DeleteAttachmentRequest,
    storage: StorageClientDep,
    _api_key: AuthenticatedUser,
) -> None:
    try:
        await storage.delete(request.key)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post(
    "/attachments.sign_text",
    response_model=SignTextResponse,
    summary="Replace attachment references with signed URLs",
)
async def sign_text(
    request: SignTextRequest,
    storage: StorageClientDep,
    _api_key: AuthenticatedUser,
) -> SignTextResponse:
    try:
        text = await sign_attachment_urls(request.text, storage)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return SignTextResponse(text=text)
