"""Notification kinds and email recipient resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from supportdesk.auth.principal import Principal
from supportdesk.notifications.email import dedupe_emails
from supportdesk.notifications.settings import NotificationSettings
from supportdesk.notifications.templates import TemplateKind
from supportdesk.tickets.models import Profile, Ticket, TicketStatus


class NotificationKind(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    UPDATED = "updated"
    RESOLVED = "resolved"
    MESSAGE_ADDED = "message_added"
    FILES_UPLOADED = "files_uploaded"
    SLA_BREACH = "sla_breach"


EMAIL_TEMPLATES: dict[NotificationKind, TemplateKind] = {
    NotificationKind.CREATED: TemplateKind.TICKET_CREATED,
    NotificationKind.ASSIGNED: TemplateKind.TICKET_ASSIGNED,
    NotificationKind.UPDATED: TemplateKind.TICKET_UPDATED,
    NotificationKind.RESOLVED: TemplateKind.TICKET_RESOLVED,
}


@dataclass(frozen=True)
class EmailJob:
    kind: NotificationKind
    ticket: Ticket
    actor: Principal
    extra: dict[str, Any] = field(default_factory=dict)


def wants_email(kind: NotificationKind, ticket: Ticket, extra: dict[str, Any]) -> bool:
    """Whether an event of this kind produces an email at all.

    Ticket updates only email on a status change, and a change to resolved is
    covered by its own RESOLVED event. Bulk updates never email.
    """
    if kind not in EMAIL_TEMPLATES:
        return False
    if kind is NotificationKind.UPDATED:
        if extra.get("is_bulk_update"):
            return False
        changes = extra.get("changes") or {}
        return "status" in changes and ticket.status is not TicketStatus.RESOLVED
    if kind is NotificationKind.ASSIGNED:
        return ticket.assigned_to is not None
    return True


def is_enabled(settings: NotificationSettings, kind: NotificationKind) -> bool:
    if not settings.email_enabled:
        return False
    switches = {
        NotificationKind.CREATED: settings.notify_on_ticket_created,
        NotificationKind.ASSIGNED: settings.notify_on_ticket_assigned,
        NotificationKind.UPDATED: settings.notify_on_ticket_updated,
        NotificationKind.RESOLVED: settings.notify_on_ticket_resolved,
    }
    return switches.get(kind, False)


def _email(profiles: dict[str, Profile], user_id: str | None) -> str | None:
    if not user_id:
        return None
    profile = profiles.get(user_id)
    return profile.email if profile else None


def resolve_recipients(
    kind: NotificationKind,
    ticket: Ticket,
    settings: NotificationSettings,
    profiles: dict[str, Profile],
) -> list[str]:
    """Email addresses for an event, deduplicated and in a stable order."""
    creator = _email(profiles, ticket.created_by)
    if kind is NotificationKind.CREATED:
        return dedupe_emails([*settings.admin_emails, creator])
    if kind is NotificationKind.ASSIGNED:
        return dedupe_emails([_email(profiles, ticket.assigned_to), creator])
    if kind in (NotificationKind.UPDATED, NotificationKind.RESOLVED):
        return dedupe_emails([creator])
    return []
