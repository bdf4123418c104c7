"""
Ticket attachments.

Upload writes bytes to disk and then inserts the records in one store call.
If the insert fails, every file written by that upload is removed again, so a
surviving attachment row always points at complete bytes.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence
from urllib.parse import quote
from uuid import uuid4

import aiofiles
import aiofiles.os
import structlog

from supportdesk.auth.principal import Principal
from supportdesk.config import get_settings
from supportdesk.kernel.errors import AuthorizationError, NotFoundError, StorageIOFailure, ValidationError
from supportdesk.kernel.ids import new_prefixed_id
from supportdesk.kernel.time import Clock, utc_now
from supportdesk.notifications.recipients import NotificationKind
from supportdesk.notifications.router import NotificationRouter
from supportdesk.tickets import policy
from supportdesk.tickets.ledger import ActivityLedger
from supportdesk.tickets.models import Attachment
from supportdesk.tickets.store import TicketStore

logger = structlog.get_logger()

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


class UploadSource(Protocol):
    """A multipart file part (Starlette `UploadFile` or a stand-in)."""

    filename: str | None
    content_type: str | None

    async def read(self, size: int = -1) -> bytes: ...


def content_disposition(filename: str) -> str:
    """`attachment` header value that survives non-latin-1 names (RFC 6266/5987)."""
    quoted = quote(filename, safe="")
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename) or "file"
    if quoted == filename:
        return f'attachment; filename="{fallback}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


def storage_name(filename: str) -> str:
    """`<safe stem>-<32 hex><ext>` so concurrent uploads never share a path."""
    original = Path(filename or "file")
    stem = _UNSAFE_CHARS_RE.sub("_", original.stem).strip("._") or "file"
    suffix = _UNSAFE_CHARS_RE.sub("", original.suffix)[:16]
    return f"{stem[:100]}-{uuid4().hex}{suffix}"


class AttachmentStorage:
    """Abstract storage interface for attachment bytes."""

    async def write(self, filename: str, data: bytes) -> str:
        raise NotImplementedError

    async def read(self, storage_path: str) -> bytes:
        raise NotImplementedError

    async def exists(self, storage_path: str) -> bool:
        raise NotImplementedError

    async def delete(self, storage_path: str) -> None:
        raise NotImplementedError


class LocalAttachmentStorage(AttachmentStorage):
    """Local filesystem storage backend."""

    def __init__(self, root_path: str | None = None) -> None:
        self.root_path = Path(root_path or get_settings().attachments_dir)
        self.root_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, storage_path: str) -> Path:
        path = (self.root_path / storage_path).resolve()
        if self.root_path.resolve() not in path.parents:
            raise StorageIOFailure(message="Invalid storage path")
        return path

    async def write(self, filename: str, data: bytes) -> str:
        name = storage_name(filename)
        target = self.root_path / name
        try:
            async with aiofiles.open(target, "wb") as f:
                await f.write(data)
        except OSError as exc:
            logger.error("Attachment write failed", path=str(target), error=str(exc))
            try:
                await aiofiles.os.remove(target)
            except OSError:
                pass
            raise StorageIOFailure(message="Failed to store attachment") from exc
        return name

    async def read(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise NotFoundError(message="File not found on disk", code="attachment.file_missing") from None
        except OSError as exc:
            raise StorageIOFailure(message="Failed to read attachment") from exc

    async def exists(self, storage_path: str) -> bool:
        return await aiofiles.os.path.exists(self._resolve(storage_path))

    async def delete(self, storage_path: str) -> None:
        path = self._resolve(storage_path)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageIOFailure(message="Failed to delete attachment") from exc


class AttachmentService:
    def __init__(
        self,
        *,
        store: TicketStore,
        storage: AttachmentStorage,
        router: NotificationRouter,
        clock: Clock = utc_now,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._storage = storage
        self._router = router
        self._clock = clock
        self._ledger = ActivityLedger(store)
        self.max_bytes = settings.attachment_max_bytes
        self.max_files = settings.attachment_max_files
        self._allowed_types = frozenset(settings.attachment_allowed_types)

    def check_file_count(self, count: int) -> None:
        if count == 0:
            raise ValidationError(message="No files uploaded", meta={"field": "files"})
        if count > self.max_files:
            raise ValidationError(
                message=f"At most {self.max_files} files per upload",
                meta={"field": "files", "max_files": self.max_files},
            )

    def check_file(self, upload: UploadedFile) -> None:
        if upload.content_type not in self._allowed_types:
            raise ValidationError(
                message="File type not allowed",
                meta={"filename": upload.filename, "content_type": upload.content_type},
            )
        if len(upload.data) > self.max_bytes:
            raise ValidationError(
                message="File too large",
                meta={"filename": upload.filename, "max_bytes": self.max_bytes},
            )

    async def read_upload(self, source: UploadSource) -> UploadedFile:
        """Read one multipart part, stopping one byte past the size limit."""
        upload = UploadedFile(
            filename=source.filename or "file",
            content_type=source.content_type or "application/octet-stream",
            data=await source.read(self.max_bytes + 1),
        )
        self.check_file(upload)
        return upload

    async def upload_sources(
        self,
        principal: Principal,
        ticket_id: str,
        sources: Sequence[UploadSource],
    ) -> list[Attachment]:
        """Access check, then capped reads, then `upload`."""
        policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
        self.check_file_count(len(sources))
        files = [await self.read_upload(source) for source in sources]
        return await self.upload(principal, ticket_id, files)

    def _validate(self, files: Sequence[UploadedFile]) -> None:
        self.check_file_count(len(files))
        for upload in files:
            self.check_file(upload)

    async def _cleanup(self, storage_paths: Sequence[str]) -> None:
        for storage_path in storage_paths:
            try:
                await self._storage.delete(storage_path)
            except Exception as exc:
                logger.error("Attachment cleanup failed", path=storage_path, error=str(exc))

    async def upload(self, principal: Principal, ticket_id: str, files: Sequence[UploadedFile]) -> list[Attachment]:
        ticket = policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
        self._validate(files)

        now = self._clock()
        written: list[str] = []
        try:
            attachments: list[Attachment] = []
            for upload in files:
                storage_path = await self._storage.write(upload.filename, upload.data)
                written.append(storage_path)
                attachments.append(
                    Attachment(
                        id=new_prefixed_id("att"),
                        ticket_id=ticket.id,
                        filename=os.path.basename(upload.filename) or "file",
                        size=len(upload.data),
                        content_type=upload.content_type,
                        storage_path=storage_path,
                        uploaded_by=principal.user_id,
                        created_at=now,
                    )
                )
            stored = await self._store.insert_attachments(
                attachments,
                self._ledger.attachments_added(ticket.id, principal.user_id, attachments, now),
            )
        except Exception:
            await self._cleanup(written)
            raise

        logger.info("Attachments uploaded", ticket_id=ticket.id, count=len(stored), uploaded_by=principal.user_id)
        await self._router.route(
            NotificationKind.FILES_UPLOADED,
            ticket,
            principal,
            {"files": [a.to_dict() for a in stored]},
        )
        return stored

    async def list_for_ticket(self, principal: Principal, ticket_id: str) -> list[Attachment]:
        policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
        return await self._store.list_attachments(ticket_id)

    async def download(self, principal: Principal, ticket_id: str, attachment_id: str) -> tuple[Attachment, bytes]:
        policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
        attachment = await self._store.get_attachment(attachment_id)
        if attachment is None or attachment.ticket_id != ticket_id:
            raise NotFoundError(message="Attachment not found", code="attachment.not_found")
        if not await self._storage.exists(attachment.storage_path):
            raise NotFoundError(message="File not found on disk", code="attachment.file_missing")
        return attachment, await self._storage.read(attachment.storage_path)

    async def delete(self, principal: Principal, attachment_id: str, *, ticket_id: str | None = None) -> None:
        attachment = await self._store.get_attachment(attachment_id)
        if attachment is None or (ticket_id is not None and attachment.ticket_id != ticket_id):
            raise NotFoundError(message="Attachment not found", code="attachment.not_found")
        ticket = await self._store.get_ticket(attachment.ticket_id)
        if ticket is None or not policy.can_delete_attachment(principal, ticket, attachment):
            raise AuthorizationError(message="Permission denied")

        await self._store.delete_attachment(
            attachment.id,
            self._ledger.attachment_deleted(attachment, principal.user_id, self._clock()),
        )
        try:
            await self._storage.delete(attachment.storage_path)
        except Exception as exc:
            logger.warning(
                "Attachment file delete failed",
                attachment_id=attachment.id,
                path=attachment.storage_path,
                error=str(exc),
            )
        logger.info("Attachment deleted", attachment_id=attachment.id, deleted_by=principal.user_id)
