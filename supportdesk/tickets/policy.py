"""
Ticket access policies.

Predicates are pure functions of the principal and the records passed in.
Callers re-evaluate them on every request and every realtime join; decisions
are never cached. The `require_*` helpers raise typed kernel errors.
"""

from __future__ import annotations

from typing import Iterable

from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import AuthorizationError, NotFoundError
from supportdesk.tickets.models import CREATOR_EDITABLE_FIELDS, Attachment, Message, Ticket


def is_creator(principal: Principal, ticket: Ticket) -> bool:
    return ticket.created_by == principal.user_id


def is_assignee(principal: Principal, ticket: Ticket) -> bool:
    return ticket.assigned_to is not None and ticket.assigned_to == principal.user_id


def can_view(principal: Principal, ticket: Ticket) -> bool:
    if principal.is_staff:
        return True
    return is_creator(principal, ticket) or is_assignee(principal, ticket)


def can_modify(principal: Principal, ticket: Ticket, fields: Iterable[str]) -> bool:
    if principal.is_staff or is_assignee(principal, ticket):
        return True
    if is_creator(principal, ticket):
        return set(fields) <= CREATOR_EDITABLE_FIELDS
    return False


def can_create_internal_message(principal: Principal) -> bool:
    return principal.is_staff


def can_view_internal_messages(principal: Principal) -> bool:
    return principal.is_staff


def can_delete(principal: Principal, ticket: Ticket) -> bool:
    return principal.is_admin


def can_bulk_update(principal: Principal) -> bool:
    return principal.is_staff


def can_delete_attachment(principal: Principal, ticket: Ticket, attachment: Attachment) -> bool:
    if principal.is_staff or attachment.uploaded_by == principal.user_id:
        return True
    return is_creator(principal, ticket) or is_assignee(principal, ticket)


def visible_messages(principal: Principal, messages: Iterable[Message]) -> list[Message]:
    """Drop internal notes for viewers who may not see them."""
    if can_view_internal_messages(principal):
        return list(messages)
    return [message for message in messages if not message.is_internal]


def require_view(principal: Principal, ticket: Ticket | None, ticket_id: str) -> Ticket:
    """Return the ticket or raise.

    An absent ticket is a NotFoundError; an existing ticket the principal may
    not see is an AuthorizationError without any ticket data attached.
    """
    if ticket is None:
        raise NotFoundError(message="Ticket not found", code="ticket.not_found", meta={"ticket_id": ticket_id})
    if not can_view(principal, ticket):
        raise AuthorizationError(message="Access denied")
    return ticket


def require_modify(principal: Principal, ticket: Ticket, fields: Iterable[str]) -> None:
    touched = sorted(set(fields))
    if not can_modify(principal, ticket, touched):
        raise AuthorizationError(
            message="Insufficient permissions to update these fields",
            meta={"fields": touched},
        )


def require_staff(principal: Principal) -> None:
    if not principal.is_staff:
        raise AuthorizationError(message="Staff role required")


def require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise AuthorizationError(message="Admin role required")
