"""Backing store contract for the ticket aggregate.

The store is the single synchronization point for ticket mutations: every
write method is one transaction, and `update_ticket` is a conditional update
matched on the previously read `updated_at`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol, Sequence

from supportdesk.tickets.models import (
    Activity,
    Attachment,
    Message,
    Profile,
    Ticket,
    TicketQuery,
    TicketStatus,
)


class TicketStore(Protocol):
    # Tickets
    async def get_ticket(self, ticket_id: str) -> Ticket | None: ...

    async def get_tickets(self, ticket_ids: Sequence[str]) -> list[Ticket]: ...

    async def list_tickets(self, query: TicketQuery) -> tuple[list[Ticket], int]: ...

    async def list_active_tickets(self) -> list[Ticket]: ...

    async def insert_ticket(self, ticket: Ticket, activities: Sequence[Activity]) -> Ticket:
        """Insert a ticket with its initial activity entries.

        Raises ConflictError when the ticket number is already taken.
        """
        ...

    async def update_ticket(
        self,
        ticket_id: str,
        changes: dict[str, Any],
        *,
        expected_updated_at: datetime,
        activities: Sequence[Activity],
    ) -> Ticket | None:
        """Apply `changes` only if the row still has `expected_updated_at`.

        Returns the updated ticket, or None when the row no longer matches
        (concurrent writer or deleted ticket). Activities are written in the
        same transaction.
        """
        ...

    async def delete_ticket_cascade(self, ticket_id: str) -> None:
        """Delete attachment rows, messages, activities, then the ticket row."""
        ...

    async def count_tickets_by(self, column: str) -> dict[str | None, int]: ...

    async def count_tickets(
        self,
        *,
        created_by: str | None = None,
        assigned_to: str | None = None,
        statuses: Iterable[TicketStatus] | None = None,
    ) -> int: ...

    async def list_tickets_since(
        self,
        *,
        created_after: datetime | None = None,
        updated_after: datetime | None = None,
    ) -> list[Ticket]:
        """Tickets created (or last updated) at or after the given instants."""
        ...

    # Messages
    async def list_messages(self, ticket_id: str) -> list[Message]: ...

    async def list_messages_since(self, since: datetime) -> list[Message]: ...

    async def insert_message(self, message: Message, activity: Activity) -> Message: ...

    # Activities
    async def list_activities(self, ticket_id: str) -> list[Activity]: ...

    # Attachments
    async def list_attachments(self, ticket_id: str) -> list[Attachment]: ...

    async def get_attachment(self, attachment_id: str) -> Attachment | None: ...

    async def insert_attachments(self, attachments: Sequence[Attachment], activity: Activity) -> list[Attachment]: ...

    async def delete_attachment(self, attachment_id: str, activity: Activity) -> None: ...

    # Profiles / departments
    async def get_profile(self, user_id: str) -> Profile | None: ...

    async def get_profiles(self, user_ids: Sequence[str]) -> dict[str, Profile]: ...

    async def find_department_agent(self, department_id: str) -> Profile | None: ...

    async def get_department_names(self) -> dict[str, str]: ...

    # Installation settings (key/value)
    async def get_settings(self) -> dict[str, str]: ...

    async def put_settings(self, values: dict[str, str]) -> None: ...
