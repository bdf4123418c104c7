"""Ticket aggregate domain models.

Ticket is the aggregate root: messages, attachments and activity entries
belong to exactly one ticket and are removed with it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any

from supportdesk.auth.principal import Principal, Role
from supportdesk.kernel.time import isoformat_z


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


ACTIVE_STATUSES = frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.PENDING})


class MessageType(str, Enum):
    COMMENT = "comment"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    RESOLUTION = "resolution"


# Fields a ticket update may touch.
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "priority",
        "status",
        "category",
        "department_id",
        "assigned_to",
        "tags",
        "due_date",
        "resolution",
    }
)

# Fields a creator who is not the assignee may change.
CREATOR_EDITABLE_FIELDS = frozenset({"title", "description"})


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat_z(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


@dataclass(frozen=True)
class Profile:
    id: str
    role: Role
    department_id: str | None = None
    full_name: str | None = None
    email: str | None = None

    def to_principal(self) -> Principal:
        return Principal(
            user_id=self.id,
            role=self.role,
            department_id=self.department_id,
            full_name=self.full_name,
            email=self.email,
        )


@dataclass(frozen=True)
class Ticket:
    id: str
    ticket_number: str
    title: str
    description: str
    priority: Priority
    status: TicketStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
    sla_due_at: datetime | None = None
    assigned_to: str | None = None
    department_id: str | None = None
    category: str | None = None
    tags: tuple[str, ...] = ()
    due_date: datetime | None = None
    resolution: str | None = None

    def with_changes(self, **changes: Any) -> "Ticket":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class Message:
    id: str
    ticket_id: str
    sender_id: str
    body: str
    created_at: datetime
    is_internal: bool = False
    message_type: MessageType = MessageType.COMMENT

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class Attachment:
    id: str
    ticket_id: str
    filename: str
    size: int
    content_type: str
    storage_path: str
    uploaded_by: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        # storage_path stays server-side.
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self) if f.name != "storage_path"}


@dataclass(frozen=True)
class Activity:
    id: str
    ticket_id: str
    actor_id: str
    action: str
    details: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class TicketView:
    """A ticket with its children, already filtered for the viewer."""

    ticket: Ticket
    messages: list[Message] = field(default_factory=list)
    activities: list[Activity] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = self.ticket.to_dict()
        payload["messages"] = [m.to_dict() for m in self.messages]
        payload["activities"] = [a.to_dict() for a in self.activities]
        payload["attachments"] = [a.to_dict() for a in self.attachments]
        return payload


@dataclass(frozen=True)
class TicketQuery:
    """List filters, sort and pagination."""

    page: int = 1
    limit: int = 20
    search: str | None = None
    status: TicketStatus | None = None
    priority: Priority | None = None
    category: str | None = None
    assigned_to: str | None = None
    department_id: str | None = None
    sort: str = "created_at"
    order: str = "desc"
    # Set by the state machine for non-staff viewers.
    visible_to: str | None = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class TicketPage:
    items: list[Ticket]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
