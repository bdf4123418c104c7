from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import NotFoundError
from supportdesk.notifications.templates import TemplateKind
from supportdesk.tickets.attachments import AttachmentStorage, storage_name
from supportdesk.tickets.models import Profile


@dataclass(slots=True)
class FakeAttachmentStorage(AttachmentStorage):
    """In-memory fake for AttachmentStorage keyed by storage path."""

    objects: dict[str, bytes] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    fail_writes_after: int | None = None

    async def write(self, filename: str, data: bytes) -> str:
        if self.fail_writes_after is not None and len(self.objects) >= self.fail_writes_after:
            raise OSError("disk full")
        name = storage_name(filename)
        self.objects[name] = data
        return name

    async def read(self, storage_path: str) -> bytes:
        if storage_path not in self.objects:
            raise NotFoundError(message="File not found on disk", code="attachment.file_missing")
        return self.objects[storage_path]

    async def exists(self, storage_path: str) -> bool:
        return storage_path in self.objects

    async def delete(self, storage_path: str) -> None:
        self.deleted.append(storage_path)
        self.objects.pop(storage_path, None)


@dataclass(slots=True)
class SentEmail:
    recipients: list[str]
    template: TemplateKind
    data: dict[str, Any]


@dataclass(slots=True)
class FakeEmailGateway:
    """Records sends instead of calling the email provider."""

    sent: list[SentEmail] = field(default_factory=list)
    succeed: bool = True
    raise_error: bool = False

    async def send(
        self,
        recipients: Iterable[str],
        template_kind: TemplateKind,
        template_data: dict[str, Any],
    ) -> bool:
        if self.raise_error:
            raise RuntimeError("provider unavailable")
        self.sent.append(SentEmail(list(recipients), template_kind, dict(template_data)))
        return self.succeed


@dataclass(slots=True)
class FakeIdentityService:
    """Maps opaque tokens to profile ids; principals come from live profiles."""

    profiles: dict[str, Profile]
    tokens: dict[str, str] = field(default_factory=dict)

    def issue(self, user_id: str) -> str:
        token = f"token-{user_id}"
        self.tokens[token] = user_id
        return token

    async def verify_token(self, token: str) -> Principal | None:
        user_id = self.tokens.get(token)
        if user_id is None:
            return None
        profile = self.profiles.get(user_id)
        return profile.to_principal() if profile else None

    async def get_profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)
