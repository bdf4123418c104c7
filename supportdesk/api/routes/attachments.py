"""Ticket attachment API."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Response, UploadFile

from supportdesk.api.dependencies import get_attachment_service, get_current_principal
from supportdesk.auth.principal import Principal
from supportdesk.tickets.attachments import AttachmentService, content_disposition

router = APIRouter(prefix="/tickets", tags=["Attachments"])


@router.post("/{ticket_id}/upload", status_code=201)
async def upload_attachments(
    ticket_id: str,
    files: list[UploadFile] = File(...),
    principal: Principal = Depends(get_current_principal),
    attachments: AttachmentService = Depends(get_attachment_service),
) -> dict[str, Any]:
    stored = await attachments.upload_sources(principal, ticket_id, files)
    return {"attachments": [a.to_dict() for a in stored]}


@router.get("/{ticket_id}/attachments")
async def list_attachments(
    ticket_id: str,
    principal: Principal = Depends(get_current_principal),
    attachments: AttachmentService = Depends(get_attachment_service),
) -> dict[str, Any]:
    items = await attachments.list_for_ticket(principal, ticket_id)
    return {"attachments": [a.to_dict() for a in items]}


@router.get("/{ticket_id}/download/{attachment_id}")
async def download_attachment(
    ticket_id: str,
    attachment_id: str,
    principal: Principal = Depends(get_current_principal),
    attachments: AttachmentService = Depends(get_attachment_service),
) -> Response:
    attachment, data = await attachments.download(principal, ticket_id, attachment_id)
    return Response(
        content=data,
        media_type=attachment.content_type,
        headers={"Content-Disposition": content_disposition(attachment.filename)},
    )


@router.delete("/{ticket_id}/attachments/{attachment_id}", status_code=204)
async def delete_attachment(
    ticket_id: str,
    attachment_id: str,
    principal: Principal = Depends(get_current_principal),
    attachments: AttachmentService = Depends(get_attachment_service),
) -> Response:
    await attachments.delete(principal, attachment_id, ticket_id=ticket_id)
    return Response(status_code=204)
