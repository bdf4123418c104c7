"""
Ticket analytics aggregation.

Pure functions over already-loaded tickets, messages and profiles. The state
machine does the store reads and the role checks; everything here is
deterministic given its inputs.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping

from supportdesk.kernel.time import coerce_utc, isoformat_z
from supportdesk.tickets.models import ACTIVE_STATUSES, Message, Priority, Profile, Ticket, TicketStatus

TIMEFRAME_DAYS: dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}
TREND_PERIOD_DAYS: dict[str, int] = {"weekly": 28, "monthly": 90}

RECENT_LIMIT = 5
URGENT_LIMIT = 10
OVERDUE_LIMIT = 10

UNKNOWN_NAME = "Unknown"
UNASSIGNED_LABEL = "Unassigned"


def zero_filled(enum_cls: type[Enum], counts: Mapping[Any, int]) -> dict[str, int]:
    """Counts for every member of `enum_cls`, including the empty ones."""
    filled = {member.value: 0 for member in enum_cls}
    for key, count in counts.items():
        name = getattr(key, "value", key)
        if name in filled:
            filled[name] += int(count)
    return filled


def _hours_between(start: datetime, end: datetime) -> float:
    return (coerce_utc(end) - coerce_utc(start)).total_seconds() / 3600.0


def _average(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def _name(profiles: Mapping[str, Profile], user_id: str | None) -> str | None:
    if not user_id:
        return None
    profile = profiles.get(user_id)
    if profile is None:
        return None
    return profile.full_name or profile.email or profile.id


def ticket_summary(ticket: Ticket, profiles: Mapping[str, Profile]) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "priority": ticket.priority.value,
        "status": ticket.status.value,
        "created_at": isoformat_z(ticket.created_at),
        "sla_due_at": isoformat_z(ticket.sla_due_at) if ticket.sla_due_at else None,
        "creator_name": _name(profiles, ticket.created_by),
        "assignee_name": _name(profiles, ticket.assigned_to),
    }


def urgent_tickets(active: Iterable[Ticket], limit: int = URGENT_LIMIT) -> list[Ticket]:
    urgent = [t for t in active if t.priority is Priority.URGENT and t.status in ACTIVE_STATUSES]
    urgent.sort(key=lambda t: t.created_at, reverse=True)
    return urgent[:limit]


def overdue_tickets(active: Iterable[Ticket], now: datetime, limit: int = OVERDUE_LIMIT) -> list[Ticket]:
    overdue = [
        t
        for t in active
        if t.status in ACTIVE_STATUSES and t.sla_due_at is not None and coerce_utc(t.sla_due_at) < coerce_utc(now)
    ]
    overdue.sort(key=lambda t: t.sla_due_at)
    return overdue[:limit]


def average_resolution_hours(tickets: Iterable[Ticket]) -> float:
    """Mean of created -> last update for resolved tickets, in hours."""
    return _average(
        [_hours_between(t.created_at, t.updated_at) for t in tickets if t.status is TicketStatus.RESOLVED]
    )


def average_first_response_hours(
    messages: Iterable[Message],
    tickets: Mapping[str, Ticket],
    staff_ids: set[str],
) -> float:
    """Mean delay until the first staff reply that is not from the ticket's creator."""
    answered: set[str] = set()
    delays: list[float] = []
    for message in sorted(messages, key=lambda m: m.created_at):
        ticket = tickets.get(message.ticket_id)
        if ticket is None or ticket.id in answered:
            continue
        if message.sender_id not in staff_ids or message.sender_id == ticket.created_by:
            continue
        answered.add(ticket.id)
        delays.append(_hours_between(ticket.created_at, message.created_at))
    return _average(delays)


def daily_volume(tickets: Iterable[Ticket]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for ticket in tickets:
        day = coerce_utc(ticket.created_at).date().isoformat()
        counts[day] = counts.get(day, 0) + 1
    return dict(sorted(counts.items()))


def agent_performance(tickets: Iterable[Ticket], profiles: Mapping[str, Profile]) -> list[dict[str, Any]]:
    stats: dict[str, dict[str, Any]] = {}
    for ticket in tickets:
        if not ticket.assigned_to:
            continue
        entry = stats.setdefault(
            ticket.assigned_to,
            {
                "agent_id": ticket.assigned_to,
                "name": _name(profiles, ticket.assigned_to) or UNKNOWN_NAME,
                "total": 0,
                "resolved": 0,
                "in_progress": 0,
            },
        )
        entry["total"] += 1
        if ticket.status is TicketStatus.RESOLVED:
            entry["resolved"] += 1
        elif ticket.status is TicketStatus.IN_PROGRESS:
            entry["in_progress"] += 1

    for entry in stats.values():
        entry["resolution_rate"] = round(entry["resolved"] * 100 / entry["total"]) if entry["total"] else 0
    return sorted(stats.values(), key=lambda e: (-e["total"], e["agent_id"]))


def period_key(moment: datetime, period: str) -> str:
    """Monday of the ISO week for `weekly`, `YYYY-MM` for `monthly`."""
    day = coerce_utc(moment).date()
    if period == "weekly":
        return (day - timedelta(days=day.weekday())).isoformat()
    return f"{day.year:04d}-{day.month:02d}"


def trends(
    tickets: Iterable[Ticket],
    period: str,
    department_names: Mapping[str, str],
) -> dict[str, Any]:
    overall: dict[str, dict[str, int]] = {}
    by_priority: dict[str, dict[str, int]] = {}
    by_department: dict[str, dict[str, int]] = {}

    for ticket in tickets:
        key = period_key(ticket.created_at, period)

        bucket = overall.setdefault(key, {"created": 0, "resolved": 0, "open": 0})
        bucket["created"] += 1
        if ticket.status is TicketStatus.RESOLVED:
            bucket["resolved"] += 1
        elif ticket.status is TicketStatus.OPEN:
            bucket["open"] += 1

        priorities = by_priority.setdefault(key, {p.value: 0 for p in Priority})
        priorities[ticket.priority.value] += 1

        label = UNASSIGNED_LABEL
        if ticket.department_id:
            label = department_names.get(ticket.department_id, ticket.department_id)
        departments = by_department.setdefault(key, {})
        departments[label] = departments.get(label, 0) + 1

    return {
        "overall_trends": dict(sorted(overall.items())),
        "priority_trends": dict(sorted(by_priority.items())),
        "department_trends": dict(sorted(by_department.items())),
    }
