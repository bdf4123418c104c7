"""
Ticket state machine.

Owns creation, updates, bulk updates, deletion, messages and the read-side
views (lists, SLA status, analytics) for the ticket aggregate.
Every mutation follows the same shape:

1. AccessPolicy check against the current ticket.
2. Value validation (no store call is made for invalid input).
3. One conditional store write carrying the mutation and its activity entries.
4. Notification routing after the write has committed.

Any status may move to any other status; what is enforced is who may touch
which fields, and that every change is recorded.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

import structlog

from supportdesk.auth.principal import Principal
from supportdesk.config import get_settings
from supportdesk.kernel.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from supportdesk.kernel.ids import new_prefixed_id, new_ticket_number
from supportdesk.kernel.time import Clock, coerce_utc, isoformat_z, utc_now
from supportdesk.notifications.recipients import NotificationKind
from supportdesk.notifications.router import NotificationRouter
from supportdesk.tickets import analytics, policy, sla
from supportdesk.tickets.attachments import AttachmentStorage
from supportdesk.tickets.ledger import ActivityLedger
from supportdesk.tickets.models import (
    ACTIVE_STATUSES,
    UPDATABLE_FIELDS,
    Message,
    MessageType,
    Priority,
    Ticket,
    TicketPage,
    TicketQuery,
    TicketStatus,
    TicketView,
)
from supportdesk.tickets.store import TicketStore

logger = structlog.get_logger()

TITLE_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 10_000
MESSAGE_MAX_LENGTH = 10_000
LIST_MAX_LIMIT = 100
BULK_MAX_TICKETS = 100
SORT_FIELDS = frozenset({"created_at", "updated_at", "priority", "status", "title"})


@dataclass(frozen=True)
class TicketDraft:
    title: str
    description: str = ""
    priority: Priority | str = Priority.NORMAL
    category: str | None = None
    department_id: str | None = None
    tags: Sequence[str] = ()
    due_date: datetime | None = None
    assigned_to: str | None = None


@dataclass(frozen=True)
class BulkUpdateResult:
    updated: list[Ticket] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def _enum_value(enum_cls: type, raw: Any, field_name: str) -> Any:
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ValidationError(
            message=f"Invalid {field_name}",
            meta={"field": field_name, "value": str(raw), "allowed": allowed},
        ) from None


def _check_title(raw: Any) -> str:
    title = str(raw or "").strip()
    if not title or len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(
            message=f"Title must be 1-{TITLE_MAX_LENGTH} characters",
            meta={"field": "title"},
        )
    return title


def _check_description(raw: Any) -> str:
    description = str(raw or "")
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            message=f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            meta={"field": "description"},
        )
    return description


def _optional_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _check_tags(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ValidationError(message="Tags must be a list of strings", meta={"field": "tags"})
    return tuple(str(tag).strip() for tag in raw if str(tag).strip())


def _check_datetime(raw: Any, field_name: str) -> datetime | None:
    if raw is None:
        return None
    if not isinstance(raw, datetime):
        raise ValidationError(message=f"Invalid {field_name}", meta={"field": field_name})
    return coerce_utc(raw)


def normalize_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Validate an update payload and coerce it into domain values."""
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(message="Unknown ticket fields", meta={"fields": unknown})

    values: dict[str, Any] = {}
    for name, raw in changes.items():
        if name == "status":
            values[name] = _enum_value(TicketStatus, raw, "status")
        elif name == "priority":
            values[name] = _enum_value(Priority, raw, "priority")
        elif name == "title":
            values[name] = _check_title(raw)
        elif name == "description":
            values[name] = _check_description(raw)
        elif name == "tags":
            values[name] = _check_tags(raw)
        elif name == "due_date":
            values[name] = _check_datetime(raw, "due_date")
        else:
            values[name] = _optional_text(raw)
    return values


def _public(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat_z(value)
    if isinstance(value, tuple):
        return list(value)
    return getattr(value, "value", value)


class TicketStateMachine:
    def __init__(
        self,
        *,
        store: TicketStore,
        router: NotificationRouter,
        storage: AttachmentStorage,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        ticket_number_attempts: int | None = None,
        update_attempts: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._router = router
        self._storage = storage
        self._clock = clock
        self._rng = rng
        self._ledger = ActivityLedger(store)
        self._ticket_number_attempts = max(1, ticket_number_attempts or settings.ticket_number_max_attempts)
        self._update_attempts = max(1, update_attempts or settings.ticket_update_max_attempts)

    @property
    def ledger(self) -> ActivityLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ticket(self, principal: Principal, ticket_id: str) -> Ticket:
        return policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)

    async def get_ticket_view(self, principal: Principal, ticket_id: str) -> TicketView:
        ticket = await self.get_ticket(principal, ticket_id)
        messages = await self._store.list_messages(ticket_id)
        return TicketView(
            ticket=ticket,
            messages=policy.visible_messages(principal, messages),
            activities=await self._ledger.history(ticket_id),
            attachments=await self._store.list_attachments(ticket_id),
        )

    async def list_tickets(self, principal: Principal, query: TicketQuery) -> TicketPage:
        if query.sort not in SORT_FIELDS:
            raise ValidationError(
                message="Invalid sort field",
                meta={"field": "sort", "allowed": sorted(SORT_FIELDS)},
            )
        if query.order not in ("asc", "desc"):
            raise ValidationError(message="Invalid sort order", meta={"field": "order"})
        page = max(1, query.page)
        limit = min(max(1, query.limit), LIST_MAX_LIMIT)
        scoped = TicketQuery(
            page=page,
            limit=limit,
            search=_optional_text(query.search),
            status=query.status,
            priority=query.priority,
            category=query.category,
            assigned_to=query.assigned_to,
            department_id=query.department_id,
            sort=query.sort,
            order=query.order,
            visible_to=None if principal.is_staff else principal.user_id,
        )
        items, total = await self._store.list_tickets(scoped)
        return TicketPage(items=items, page=page, limit=limit, total=total)

    async def sla_status(self, principal: Principal) -> sla.SLASummary:
        policy.require_staff(principal)
        return sla.summarize(self._clock(), await self._store.list_active_tickets())

    async def analytics_summary(self, principal: Principal) -> dict[str, Any]:
        policy.require_staff(principal)
        by_status = await self._store.count_tickets_by("status")
        by_priority = await self._store.count_tickets_by("priority")
        by_department = await self._store.count_tickets_by("department_id")
        names = await self._store.get_department_names()

        departments: dict[str, int] = {}
        for department_id, count in by_department.items():
            label = names.get(department_id, department_id) if department_id else "Unassigned"
            departments[label] = departments.get(label, 0) + count

        return {
            "total_tickets": sum(by_status.values()),
            "status_distribution": analytics.zero_filled(TicketStatus, by_status),
            "priority_distribution": analytics.zero_filled(Priority, by_priority),
            "department_distribution": departments,
            "generated_at": isoformat_z(self._clock()),
        }

    async def analytics_dashboard(self, principal: Principal) -> dict[str, Any]:
        """Per-user overview; the urgent and overdue queues are staff only."""
        now = self._clock()
        my_tickets = await self._store.count_tickets(created_by=principal.user_id)
        recent, _ = await self._store.list_tickets(
            TicketQuery(
                limit=analytics.RECENT_LIMIT,
                sort="created_at",
                order="desc",
                visible_to=None if principal.is_staff else principal.user_id,
            )
        )

        assigned_to_me = 0
        urgent: list[Ticket] = []
        overdue: list[Ticket] = []
        if principal.is_staff:
            assigned_to_me = await self._store.count_tickets(
                assigned_to=principal.user_id,
                statuses=ACTIVE_STATUSES,
            )
            active = await self._store.list_active_tickets()
            urgent = analytics.urgent_tickets(active)
            overdue = analytics.overdue_tickets(active, now)

        shown = [*recent, *urgent, *overdue]
        profiles = await self._store.get_profiles(
            [uid for t in shown for uid in (t.created_by, t.assigned_to) if uid]
        )
        return {
            "my_tickets_count": my_tickets,
            "assigned_to_me_count": assigned_to_me,
            "recent_tickets": [analytics.ticket_summary(t, profiles) for t in recent],
            "urgent_tickets": [analytics.ticket_summary(t, profiles) for t in urgent],
            "overdue_tickets": [analytics.ticket_summary(t, profiles) for t in overdue],
            "is_staff": principal.is_staff,
            "generated_at": isoformat_z(now),
        }

    async def analytics_performance(self, principal: Principal, timeframe: str = "30d") -> dict[str, Any]:
        policy.require_staff(principal)
        days = analytics.TIMEFRAME_DAYS.get(timeframe)
        if days is None:
            raise ValidationError(
                message="Invalid timeframe",
                meta={"field": "timeframe", "allowed": list(analytics.TIMEFRAME_DAYS)},
            )
        now = self._clock()
        start = now - timedelta(days=days)

        touched = await self._store.list_tickets_since(updated_after=start)
        created = await self._store.list_tickets_since(created_after=start)
        messages = await self._store.list_messages_since(start)

        answered = {t.id: t for t in await self._store.get_tickets(sorted({m.ticket_id for m in messages}))}
        profiles = await self._store.get_profiles(
            [m.sender_id for m in messages] + [t.assigned_to for t in touched if t.assigned_to]
        )
        staff_ids = {uid for uid, profile in profiles.items() if profile.to_principal().is_staff}

        return {
            "timeframe": timeframe,
            "avg_resolution_time_hours": analytics.average_resolution_hours(touched),
            "avg_first_response_time_hours": analytics.average_first_response_hours(messages, answered, staff_ids),
            "daily_ticket_volume": analytics.daily_volume(created),
            "agent_performance": analytics.agent_performance(touched, profiles),
            "generated_at": isoformat_z(now),
        }

    async def analytics_trends(self, principal: Principal, period: str = "weekly") -> dict[str, Any]:
        policy.require_staff(principal)
        days = analytics.TREND_PERIOD_DAYS.get(period)
        if days is None:
            raise ValidationError(
                message="Invalid period",
                meta={"field": "period", "allowed": list(analytics.TREND_PERIOD_DAYS)},
            )
        now = self._clock()
        tickets = await self._store.list_tickets_since(created_after=now - timedelta(days=days))
        names = await self._store.get_department_names()
        return {
            "period": period,
            **analytics.trends(tickets, period, names),
            "generated_at": isoformat_z(now),
        }

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    async def _check_references(self, *, assigned_to: str | None, department_id: str | None) -> None:
        """Reject assignees and departments that do not exist before any write."""
        if assigned_to and await self._store.get_profile(assigned_to) is None:
            raise NotFoundError(
                message="Assignee not found",
                code="profile.not_found",
                meta={"field": "assigned_to", "user_id": assigned_to},
            )
        if department_id and department_id not in await self._store.get_department_names():
            raise NotFoundError(
                message="Department not found",
                code="department.not_found",
                meta={"field": "department_id", "department_id": department_id},
            )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_ticket(self, principal: Principal, draft: TicketDraft) -> Ticket:
        title = _check_title(draft.title)
        description = _check_description(draft.description)
        priority = _enum_value(Priority, draft.priority, "priority")
        tags = _check_tags(draft.tags)
        due = _check_datetime(draft.due_date, "due_date")
        department_id = _optional_text(draft.department_id)
        assigned_to = _optional_text(draft.assigned_to)

        if assigned_to and not principal.is_staff:
            raise AuthorizationError(message="Only staff may assign tickets")
        await self._check_references(assigned_to=assigned_to, department_id=department_id)

        if not assigned_to and department_id:
            agent = await self._store.find_department_agent(department_id)
            if agent is not None:
                assigned_to = agent.id
                logger.info("Ticket auto-assigned", department_id=department_id, assignee_id=agent.id)

        now = self._clock()
        ticket_id = new_prefixed_id("tkt")
        for attempt in range(1, self._ticket_number_attempts + 1):
            ticket = Ticket(
                id=ticket_id,
                ticket_number=new_ticket_number(now, rng=self._rng),
                title=title,
                description=description,
                priority=priority,
                status=TicketStatus.OPEN,
                created_by=principal.user_id,
                created_at=now,
                updated_at=now,
                sla_due_at=sla.due_date(priority, now),
                assigned_to=assigned_to,
                department_id=department_id,
                category=_optional_text(draft.category),
                tags=tags,
                due_date=due,
            )
            try:
                created = await self._store.insert_ticket(ticket, [self._ledger.created(ticket, principal.user_id, now)])
                break
            except ConflictError:
                logger.warning(
                    "Ticket number collision, retrying",
                    ticket_number=ticket.ticket_number,
                    attempt=attempt,
                )
        else:
            raise ConflictError(
                message="Could not allocate a unique ticket number",
                code="ticket.number_conflict",
                meta={"attempts": self._ticket_number_attempts},
            )

        logger.info(
            "Ticket created",
            ticket_id=created.id,
            ticket_number=created.ticket_number,
            priority=created.priority.value,
            created_by=principal.user_id,
        )
        await self._router.route(NotificationKind.CREATED, created, principal)
        if created.assigned_to:
            await self._router.route(NotificationKind.ASSIGNED, created, principal)
        return created

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _next_updated_at(self, current: Ticket) -> datetime:
        # Strictly increasing so the conditional write always detects a racing writer.
        now = self._clock()
        floor = current.updated_at + timedelta(microseconds=1)
        return now if now >= floor else floor

    async def _apply(
        self,
        principal: Principal,
        ticket_id: str,
        values: dict[str, Any],
        *,
        bulk: bool,
    ) -> tuple[Ticket, Ticket, dict[str, Any]] | None:
        """Conditionally write `values`. Returns (before, after, diff) or None for a no-op."""
        for attempt in range(1, self._update_attempts + 1):
            current = policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
            policy.require_modify(principal, current, values.keys())

            diff = {name: value for name, value in values.items() if getattr(current, name) != value}
            if not diff:
                return None

            if "priority" in diff:
                diff["sla_due_at"] = sla.due_date(diff["priority"], current.created_at)
            diff["updated_at"] = self._next_updated_at(current)

            proposed = current.with_changes(**diff)
            now = diff["updated_at"]
            if bulk:
                touched = sorted(name for name in diff if name in UPDATABLE_FIELDS)
                activities = [self._ledger.bulk_updated(ticket_id, touched, principal.user_id, now)]
            else:
                activities = self._ledger.for_update(current, proposed, principal.user_id, now)

            updated = await self._store.update_ticket(
                ticket_id,
                diff,
                expected_updated_at=current.updated_at,
                activities=activities,
            )
            if updated is not None:
                return current, updated, diff
            logger.info("Concurrent ticket update detected, retrying", ticket_id=ticket_id, attempt=attempt)

        raise ConflictError(
            message="Ticket was modified concurrently, please retry",
            code="ticket.update_conflict",
            meta={"ticket_id": ticket_id},
        )

    async def _announce_update(
        self,
        principal: Principal,
        before: Ticket,
        after: Ticket,
        diff: dict[str, Any],
        *,
        bulk: bool,
    ) -> None:
        changes = {name: _public(value) for name, value in diff.items()}
        previous = {name: _public(getattr(before, name)) for name in diff}
        await self._router.route(
            NotificationKind.UPDATED,
            after,
            principal,
            {"changes": changes, "previous": previous, "is_bulk_update": bulk},
        )
        if bulk:
            return
        if "status" in diff and after.status is TicketStatus.RESOLVED:
            await self._router.route(NotificationKind.RESOLVED, after, principal, {"previous": previous})
        if "assigned_to" in diff and after.assigned_to:
            await self._router.route(NotificationKind.ASSIGNED, after, principal)

    async def update_ticket(self, principal: Principal, ticket_id: str, changes: Mapping[str, Any]) -> Ticket:
        if not changes:
            raise ValidationError(message="No fields to update")
        current = policy.require_view(principal, await self._store.get_ticket(ticket_id), ticket_id)
        policy.require_modify(principal, current, changes.keys())
        values = normalize_changes(changes)
        await self._check_references(
            assigned_to=values.get("assigned_to"),
            department_id=values.get("department_id"),
        )

        result = await self._apply(principal, ticket_id, values, bulk=False)
        if result is None:
            return current
        before, after, diff = result
        logger.info(
            "Ticket updated",
            ticket_id=ticket_id,
            fields=sorted(diff),
            updated_by=principal.user_id,
        )
        await self._announce_update(principal, before, after, diff, bulk=False)
        return after

    async def bulk_update(
        self,
        principal: Principal,
        ticket_ids: Sequence[str],
        changes: Mapping[str, Any],
    ) -> BulkUpdateResult:
        policy.require_staff(principal)
        ids = list(dict.fromkeys(tid for tid in ticket_ids if tid))
        if not ids:
            raise ValidationError(message="ticket_ids must not be empty", meta={"field": "ticket_ids"})
        if len(ids) > BULK_MAX_TICKETS:
            raise ValidationError(
                message=f"At most {BULK_MAX_TICKETS} tickets per bulk update",
                meta={"field": "ticket_ids"},
            )
        if not changes:
            raise ValidationError(message="No fields to update")
        values = normalize_changes(changes)
        await self._check_references(
            assigned_to=values.get("assigned_to"),
            department_id=values.get("department_id"),
        )

        result = BulkUpdateResult()
        for ticket_id in ids:
            try:
                applied = await self._apply(principal, ticket_id, values, bulk=True)
            except NotFoundError:
                result.missing.append(ticket_id)
                continue
            if applied is None:
                result.unchanged.append(ticket_id)
                continue
            before, after, diff = applied
            result.updated.append(after)
            await self._announce_update(principal, before, after, diff, bulk=True)

        logger.info(
            "Bulk ticket update",
            fields=sorted(values),
            updated=len(result.updated),
            unchanged=len(result.unchanged),
            missing=len(result.missing),
            updated_by=principal.user_id,
        )
        return result

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_ticket(self, principal: Principal, ticket_id: str) -> None:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(message="Ticket not found", code="ticket.not_found", meta={"ticket_id": ticket_id})
        if not policy.can_delete(principal, ticket):
            raise AuthorizationError(message="Only admins can delete tickets")

        for attachment in await self._store.list_attachments(ticket_id):
            try:
                await self._storage.delete(attachment.storage_path)
            except Exception as exc:
                logger.warning(
                    "Attachment file delete failed",
                    ticket_id=ticket_id,
                    attachment_id=attachment.id,
                    error=str(exc),
                )

        await self._store.delete_ticket_cascade(ticket_id)
        logger.info("Ticket deleted", ticket_id=ticket_id, deleted_by=principal.user_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        principal: Principal,
        ticket_id: str,
        body: str,
        *,
        is_internal: bool = False,
        message_type: MessageType | str = MessageType.COMMENT,
    ) -> Message:
        ticket = await self.get_ticket(principal, ticket_id)
        if is_internal and not policy.can_create_internal_message(principal):
            raise AuthorizationError(message="Only staff can add internal notes")

        text = (body or "").strip()
        if not text or len(text) > MESSAGE_MAX_LENGTH:
            raise ValidationError(
                message=f"Message must be 1-{MESSAGE_MAX_LENGTH} characters",
                meta={"field": "body"},
            )
        kind = _enum_value(MessageType, message_type, "message_type")

        now = self._clock()
        message = Message(
            id=new_prefixed_id("msg"),
            ticket_id=ticket.id,
            sender_id=principal.user_id,
            body=text,
            created_at=now,
            is_internal=bool(is_internal),
            message_type=kind,
        )
        stored = await self._store.insert_message(
            message,
            self._ledger.message_added(ticket.id, principal.user_id, message.is_internal, now),
        )
        payload = stored.to_dict()
        payload["sender"] = {"id": principal.user_id, "name": principal.display_name, "role": principal.role.value}
        await self._router.route(NotificationKind.MESSAGE_ADDED, ticket, principal, {"message": payload})
        return stored
