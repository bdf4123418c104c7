"""SLA deadlines derived from ticket priority."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from supportdesk.kernel.time import coerce_utc
from supportdesk.tickets.models import ACTIVE_STATUSES, Priority, Ticket

SLA_HOURS: dict[str, int] = {
    Priority.LOW.value: 72,
    Priority.NORMAL.value: 48,
    Priority.HIGH.value: 24,
    Priority.URGENT.value: 4,
}
DEFAULT_SLA_HOURS = 48
DUE_SOON_WINDOW = timedelta(hours=2)


class SLAState(str, Enum):
    OVERDUE = "overdue"
    DUE_SOON = "due_soon"
    ON_TRACK = "on_track"


def sla_hours(priority: Priority | str | None) -> int:
    key = priority.value if isinstance(priority, Priority) else priority
    return SLA_HOURS.get(key or "", DEFAULT_SLA_HOURS)


def due_date(priority: Priority | str | None, created_at: datetime) -> datetime:
    return coerce_utc(created_at) + timedelta(hours=sla_hours(priority))


def classify(now: datetime, due: datetime) -> SLAState:
    remaining = coerce_utc(due) - coerce_utc(now)
    if remaining < timedelta(0):
        return SLAState.OVERDUE
    if remaining <= DUE_SOON_WINDOW:
        return SLAState.DUE_SOON
    return SLAState.ON_TRACK


def hours_remaining(now: datetime, due: datetime) -> float:
    return (coerce_utc(due) - coerce_utc(now)).total_seconds() / 3600.0


@dataclass
class SLASummary:
    overdue: list[Ticket] = field(default_factory=list)
    due_soon: list[Ticket] = field(default_factory=list)
    on_track: list[Ticket] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overdue_count": len(self.overdue),
            "due_soon_count": len(self.due_soon),
            "on_track_count": len(self.on_track),
            "overdue": [t.to_dict() for t in self.overdue],
            "due_soon": [t.to_dict() for t in self.due_soon],
        }


def summarize(now: datetime, tickets: Iterable[Ticket]) -> SLASummary:
    """Bucket active tickets that carry an SLA deadline."""
    summary = SLASummary()
    for ticket in tickets:
        if ticket.status not in ACTIVE_STATUSES or ticket.sla_due_at is None:
            continue
        state = classify(now, ticket.sla_due_at)
        if state is SLAState.OVERDUE:
            summary.overdue.append(ticket)
        elif state is SLAState.DUE_SOON:
            summary.due_soon.append(ticket)
        else:
            summary.on_track.append(ticket)
    return summary
