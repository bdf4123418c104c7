"""
Activity ledger.

Append-only audit trail per ticket. Entries are derived here and persisted by
the store in the same transaction as the mutation that produced them; the
ledger never rewrites or removes an entry.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from supportdesk.kernel.ids import new_prefixed_id
from supportdesk.tickets.models import Activity, Attachment, Ticket
from supportdesk.tickets.store import TicketStore


class ActivityAction:
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    PRIORITY_CHANGED = "priority_changed"
    BULK_UPDATED = "bulk_updated"
    COMMENTED = "commented"
    INTERNAL_NOTE = "internal_note"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_DELETED = "attachment_deleted"


def _value(raw: object) -> str:
    if raw is None:
        return "none"
    return str(getattr(raw, "value", raw))


class ActivityLedger:
    def __init__(self, store: TicketStore) -> None:
        self._store = store

    @staticmethod
    def entry(ticket_id: str, actor_id: str, action: str, details: str, now: datetime) -> Activity:
        return Activity(
            id=new_prefixed_id("act"),
            ticket_id=ticket_id,
            actor_id=actor_id,
            action=action,
            details=details,
            created_at=now,
        )

    def created(self, ticket: Ticket, actor_id: str, now: datetime) -> Activity:
        return self.entry(
            ticket.id,
            actor_id,
            ActivityAction.CREATED,
            f"Ticket created with priority: {_value(ticket.priority)}",
            now,
        )

    def for_update(self, before: Ticket, after: Ticket, actor_id: str, now: datetime) -> list[Activity]:
        """One entry per status, assignment or priority change that actually differs."""
        entries: list[Activity] = []
        if before.status != after.status:
            entries.append(
                self.entry(
                    before.id,
                    actor_id,
                    ActivityAction.STATUS_CHANGED,
                    f"Status changed from {_value(before.status)} to {_value(after.status)}",
                    now,
                )
            )
        if before.assigned_to != after.assigned_to:
            if after.assigned_to:
                details = f"Ticket assigned to user {after.assigned_to}"
            else:
                details = f"Ticket unassigned from user {before.assigned_to}"
            entries.append(self.entry(before.id, actor_id, ActivityAction.ASSIGNED, details, now))
        if before.priority != after.priority:
            entries.append(
                self.entry(
                    before.id,
                    actor_id,
                    ActivityAction.PRIORITY_CHANGED,
                    f"Priority changed from {_value(before.priority)} to {_value(after.priority)}",
                    now,
                )
            )
        return entries

    def bulk_updated(self, ticket_id: str, fields: Iterable[str], actor_id: str, now: datetime) -> Activity:
        return self.entry(
            ticket_id,
            actor_id,
            ActivityAction.BULK_UPDATED,
            f"Bulk update: {', '.join(sorted(fields))}",
            now,
        )

    def message_added(self, ticket_id: str, actor_id: str, is_internal: bool, now: datetime) -> Activity:
        if is_internal:
            return self.entry(ticket_id, actor_id, ActivityAction.INTERNAL_NOTE, "Added internal note", now)
        return self.entry(ticket_id, actor_id, ActivityAction.COMMENTED, "Added comment", now)

    def attachments_added(self, ticket_id: str, actor_id: str, attachments: Sequence[Attachment], now: datetime) -> Activity:
        names = ", ".join(a.filename for a in attachments)
        return self.entry(
            ticket_id,
            actor_id,
            ActivityAction.ATTACHMENT_ADDED,
            f"Added {len(attachments)} attachment(s): {names}",
            now,
        )

    def attachment_deleted(self, attachment: Attachment, actor_id: str, now: datetime) -> Activity:
        return self.entry(
            attachment.ticket_id,
            actor_id,
            ActivityAction.ATTACHMENT_DELETED,
            f"Deleted attachment: {attachment.filename}",
            now,
        )

    async def history(self, ticket_id: str) -> list[Activity]:
        """Entries for a ticket, oldest first."""
        entries = await self._store.list_activities(ticket_id)
        return sorted(entries, key=lambda a: a.created_at)
