"""
Per-installation notification settings.

Defaults come from the environment; rows in the `settings` table override
them. Values are re-read on every dispatch so admin changes apply at once.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from typing import Any

import structlog

from supportdesk.config import get_settings
from supportdesk.notifications.email import dedupe_emails
from supportdesk.tickets.store import TicketStore

logger = structlog.get_logger()

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_email_list(raw: Any) -> list[str]:
    """Accept a list, a JSON array string or a comma-separated string."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return dedupe_emails(str(item) for item in raw)
    text = str(raw).strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("admin_emails is not valid JSON; falling back to comma split")
        else:
            if isinstance(parsed, list):
                return dedupe_emails(str(item) for item in parsed)
    return dedupe_emails(text.split(","))


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class NotificationSettings:
    email_enabled: bool
    admin_emails: tuple[str, ...]
    notify_on_ticket_created: bool
    notify_on_ticket_assigned: bool
    notify_on_ticket_updated: bool
    notify_on_ticket_resolved: bool
    mail_from_name: str

    @classmethod
    def from_env(cls) -> "NotificationSettings":
        settings = get_settings()
        return cls(
            email_enabled=settings.email_enabled,
            admin_emails=tuple(parse_email_list(settings.admin_emails)),
            notify_on_ticket_created=settings.notify_on_ticket_created,
            notify_on_ticket_assigned=settings.notify_on_ticket_assigned,
            notify_on_ticket_updated=settings.notify_on_ticket_updated,
            notify_on_ticket_resolved=settings.notify_on_ticket_resolved,
            mail_from_name=settings.mail_from_name,
        )

    def with_overrides(self, rows: dict[str, str]) -> "NotificationSettings":
        values = asdict(self)
        for f in fields(self):
            if f.name not in rows:
                continue
            raw = rows[f.name]
            if f.name == "admin_emails":
                values[f.name] = tuple(parse_email_list(raw))
            elif f.name == "mail_from_name":
                values[f.name] = str(raw) or self.mail_from_name
            else:
                values[f.name] = _parse_bool(raw)
        return NotificationSettings(**values)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["admin_emails"] = list(self.admin_emails)
        return payload


def serialize_overrides(values: dict[str, Any]) -> dict[str, str]:
    """Turn API values into settings-table strings."""
    known = {f.name for f in fields(NotificationSettings)}
    rows: dict[str, str] = {}
    for key, value in values.items():
        if key not in known or value is None:
            continue
        if key == "admin_emails":
            rows[key] = json.dumps(parse_email_list(value))
        elif isinstance(value, bool):
            rows[key] = "true" if value else "false"
        else:
            rows[key] = str(value)
    return rows


class NotificationSettingsProvider:
    def __init__(self, store: TicketStore) -> None:
        self._store = store

    async def load(self) -> NotificationSettings:
        base = NotificationSettings.from_env()
        rows = await self._store.get_settings()
        return base.with_overrides(rows)

    async def save(self, values: dict[str, Any]) -> NotificationSettings:
        rows = serialize_overrides(values)
        if rows:
            await self._store.put_settings(rows)
            logger.info("Notification settings updated", keys=sorted(rows))
        return await self.load()
