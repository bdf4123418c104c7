"""
SQLAlchemy-backed ticket store.

Each public method runs in its own session/transaction. Ticket updates are
conditional on the previously read `updated_at` so concurrent writers cannot
lose each other's changes.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Iterable, Sequence

import structlog
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from supportdesk.auth.principal import Role
from supportdesk.db.client import get_db_session
from supportdesk.db.models import (
    DepartmentRow,
    ProfileRow,
    SettingRow,
    TicketActivityRow,
    TicketAttachmentRow,
    TicketMessageRow,
    TicketRow,
)
from supportdesk.kernel.errors import ConflictError, DependencyFailure, SupportDeskError, ValidationError
from supportdesk.kernel.time import coerce_utc, utc_now
from supportdesk.tickets.models import (
    ACTIVE_STATUSES,
    Activity,
    Attachment,
    Message,
    MessageType,
    Priority,
    Profile,
    Ticket,
    TicketQuery,
    TicketStatus,
)

logger = structlog.get_logger()

_PRIORITY_RANK = {Priority.LOW.value: 0, Priority.NORMAL.value: 1, Priority.HIGH.value: 2, Priority.URGENT.value: 3}
_COUNTABLE_COLUMNS = {
    "status": TicketRow.status,
    "priority": TicketRow.priority,
    "department_id": TicketRow.department_id,
    "category": TicketRow.category,
}


def _dt(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


def _ticket(row: TicketRow) -> Ticket:
    return Ticket(
        id=row.id,
        ticket_number=row.ticket_number,
        title=row.title,
        description=row.description or "",
        priority=Priority(row.priority),
        status=TicketStatus(row.status),
        created_by=row.created_by,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
        sla_due_at=_dt(row.sla_due_at),
        assigned_to=row.assigned_to,
        department_id=row.department_id,
        category=row.category,
        tags=tuple(row.tags or ()),
        due_date=_dt(row.due_date),
        resolution=row.resolution,
    )


def _ticket_values(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "description": ticket.description,
        "priority": ticket.priority.value,
        "status": ticket.status.value,
        "category": ticket.category,
        "tags": list(ticket.tags),
        "created_by": ticket.created_by,
        "assigned_to": ticket.assigned_to,
        "department_id": ticket.department_id,
        "sla_due_at": ticket.sla_due_at,
        "due_date": ticket.due_date,
        "resolution": ticket.resolution,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


def like_pattern(text: str) -> str:
    """Substring pattern for ILIKE with the user's `%` and `_` taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _ticket_write_error(exc: IntegrityError) -> SupportDeskError:
    """Typed error for a constraint violation on a ticket insert/update."""
    detail = str(exc.orig)
    if "ticket_number" in detail:
        return ConflictError(message="Ticket number already exists", code="ticket.number_conflict")
    return ValidationError(
        message="Ticket references a record that does not exist",
        code="ticket.invalid_reference",
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, tuple):
        return list(value)
    return getattr(value, "value", value)


def _message(row: TicketMessageRow) -> Message:
    return Message(
        id=row.id,
        ticket_id=row.ticket_id,
        sender_id=row.sender_id,
        body=row.body,
        created_at=coerce_utc(row.created_at),
        is_internal=bool(row.is_internal),
        message_type=MessageType(row.message_type),
    )


def _attachment(row: TicketAttachmentRow) -> Attachment:
    return Attachment(
        id=row.id,
        ticket_id=row.ticket_id,
        filename=row.filename,
        size=int(row.size),
        content_type=row.content_type,
        storage_path=row.storage_path,
        uploaded_by=row.uploaded_by,
        created_at=coerce_utc(row.created_at),
    )


def _activity(row: TicketActivityRow) -> Activity:
    return Activity(
        id=row.id,
        ticket_id=row.ticket_id,
        actor_id=row.actor_id,
        action=row.action,
        details=row.details or "",
        created_at=coerce_utc(row.created_at),
    )


def _profile(row: ProfileRow) -> Profile:
    return Profile(
        id=row.id,
        role=Role(row.role),
        department_id=row.department_id,
        full_name=row.full_name,
        email=row.email,
    )


def _activity_row(activity: Activity) -> TicketActivityRow:
    return TicketActivityRow(
        id=activity.id,
        ticket_id=activity.ticket_id,
        actor_id=activity.actor_id,
        action=activity.action,
        details=activity.details,
        created_at=activity.created_at,
    )


class SqlTicketStore:
    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with get_db_session() as session:
                yield session
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError, OSError) as exc:
            logger.error("Ticket store unavailable", error=str(exc))
            raise DependencyFailure(message="Ticket store unavailable", code="dependency.database") from exc

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._session() as session:
            row = await session.get(TicketRow, ticket_id)
            return _ticket(row) if row else None

    async def get_tickets(self, ticket_ids: Sequence[str]) -> list[Ticket]:
        if not ticket_ids:
            return []
        async with self._session() as session:
            result = await session.execute(select(TicketRow).where(TicketRow.id.in_(list(ticket_ids))))
            return [_ticket(row) for row in result.scalars()]

    async def list_tickets(self, query: TicketQuery) -> tuple[list[Ticket], int]:
        conditions = []
        if query.visible_to:
            conditions.append(
                or_(TicketRow.created_by == query.visible_to, TicketRow.assigned_to == query.visible_to)
            )
        if query.search:
            pattern = like_pattern(query.search)
            conditions.append(
                or_(
                    TicketRow.title.ilike(pattern, escape="\\"),
                    TicketRow.description.ilike(pattern, escape="\\"),
                )
            )
        if query.status:
            conditions.append(TicketRow.status == query.status.value)
        if query.priority:
            conditions.append(TicketRow.priority == query.priority.value)
        if query.category:
            conditions.append(TicketRow.category == query.category)
        if query.assigned_to:
            conditions.append(TicketRow.assigned_to == query.assigned_to)
        if query.department_id:
            conditions.append(TicketRow.department_id == query.department_id)

        if query.sort == "priority":
            sort_column = case(_PRIORITY_RANK, value=TicketRow.priority, else_=1)
        else:
            sort_column = getattr(TicketRow, query.sort)
        ordering = sort_column.asc() if query.order == "asc" else sort_column.desc()

        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(TicketRow).where(*conditions))
            result = await session.execute(
                select(TicketRow)
                .where(*conditions)
                .order_by(ordering, TicketRow.id)
                .offset(query.offset)
                .limit(query.limit)
            )
            return [_ticket(row) for row in result.scalars()], int(total or 0)

    async def list_active_tickets(self) -> list[Ticket]:
        async with self._session() as session:
            result = await session.execute(
                select(TicketRow)
                .where(TicketRow.status.in_([s.value for s in ACTIVE_STATUSES]))
                .where(TicketRow.sla_due_at.is_not(None))
                .order_by(TicketRow.sla_due_at.asc())
            )
            return [_ticket(row) for row in result.scalars()]

    async def insert_ticket(self, ticket: Ticket, activities: Sequence[Activity]) -> Ticket:
        try:
            async with self._session() as session:
                session.add(TicketRow(**_ticket_values(ticket)))
                await session.flush()
                session.add_all([_activity_row(a) for a in activities])
        except IntegrityError as exc:
            raise _ticket_write_error(exc) from exc
        return ticket

    async def update_ticket(
        self,
        ticket_id: str,
        changes: dict[str, Any],
        *,
        expected_updated_at: datetime,
        activities: Sequence[Activity],
    ) -> Ticket | None:
        values = {name: _column_value(value) for name, value in changes.items()}
        try:
            async with self._session() as session:
                result = await session.execute(
                    update(TicketRow)
                    .where(TicketRow.id == ticket_id)
                    .where(TicketRow.updated_at == expected_updated_at)
                    .values(**values)
                    .returning(TicketRow)
                    .execution_options(synchronize_session=False)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                session.add_all([_activity_row(a) for a in activities])
                updated = _ticket(row)
        except IntegrityError as exc:
            raise _ticket_write_error(exc) from exc
        return updated

    async def delete_ticket_cascade(self, ticket_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(TicketAttachmentRow).where(TicketAttachmentRow.ticket_id == ticket_id))
            await session.execute(delete(TicketMessageRow).where(TicketMessageRow.ticket_id == ticket_id))
            await session.execute(delete(TicketActivityRow).where(TicketActivityRow.ticket_id == ticket_id))
            await session.execute(delete(TicketRow).where(TicketRow.id == ticket_id))

    async def count_tickets_by(self, column: str) -> dict[str | None, int]:
        target = _COUNTABLE_COLUMNS[column]
        async with self._session() as session:
            result = await session.execute(select(target, func.count()).group_by(target))
            return {key: int(count) for key, count in result.all()}

    async def count_tickets(
        self,
        *,
        created_by: str | None = None,
        assigned_to: str | None = None,
        statuses: Iterable[TicketStatus] | None = None,
    ) -> int:
        statement = select(func.count()).select_from(TicketRow)
        if created_by:
            statement = statement.where(TicketRow.created_by == created_by)
        if assigned_to:
            statement = statement.where(TicketRow.assigned_to == assigned_to)
        if statuses is not None:
            statement = statement.where(TicketRow.status.in_([s.value for s in statuses]))
        async with self._session() as session:
            return int(await session.scalar(statement) or 0)

    async def list_tickets_since(
        self,
        *,
        created_after: datetime | None = None,
        updated_after: datetime | None = None,
    ) -> list[Ticket]:
        statement = select(TicketRow)
        if created_after is not None:
            statement = statement.where(TicketRow.created_at >= created_after)
        if updated_after is not None:
            statement = statement.where(TicketRow.updated_at >= updated_after)
        async with self._session() as session:
            result = await session.execute(statement.order_by(TicketRow.created_at.asc(), TicketRow.id))
            return [_ticket(row) for row in result.scalars()]

    async def _touch(self, session: AsyncSession, ticket_id: str, at: datetime) -> None:
        await session.execute(
            update(TicketRow)
            .where(TicketRow.id == ticket_id)
            .where(TicketRow.updated_at < at)
            .values(updated_at=at)
        )

    # ------------------------------------------------------------------
    # Messages / activities
    # ------------------------------------------------------------------

    async def list_messages(self, ticket_id: str) -> list[Message]:
        async with self._session() as session:
            result = await session.execute(
                select(TicketMessageRow)
                .where(TicketMessageRow.ticket_id == ticket_id)
                .order_by(TicketMessageRow.created_at.asc())
            )
            return [_message(row) for row in result.scalars()]

    async def list_messages_since(self, since: datetime) -> list[Message]:
        async with self._session() as session:
            result = await session.execute(
                select(TicketMessageRow)
                .where(TicketMessageRow.created_at >= since)
                .order_by(TicketMessageRow.created_at.asc())
            )
            return [_message(row) for row in result.scalars()]

    async def insert_message(self, message: Message, activity: Activity) -> Message:
        async with self._session() as session:
            session.add(
                TicketMessageRow(
                    id=message.id,
                    ticket_id=message.ticket_id,
                    sender_id=message.sender_id,
                    body=message.body,
                    is_internal=message.is_internal,
                    message_type=message.message_type.value,
                    created_at=message.created_at,
                )
            )
            session.add(_activity_row(activity))
            await self._touch(session, message.ticket_id, message.created_at)
        return message

    async def list_activities(self, ticket_id: str) -> list[Activity]:
        async with self._session() as session:
            result = await session.execute(
                select(TicketActivityRow)
                .where(TicketActivityRow.ticket_id == ticket_id)
                .order_by(TicketActivityRow.created_at.asc())
            )
            return [_activity(row) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def list_attachments(self, ticket_id: str) -> list[Attachment]:
        async with self._session() as session:
            result = await session.execute(
                select(TicketAttachmentRow)
                .where(TicketAttachmentRow.ticket_id == ticket_id)
                .order_by(TicketAttachmentRow.created_at.asc())
            )
            return [_attachment(row) for row in result.scalars()]

    async def get_attachment(self, attachment_id: str) -> Attachment | None:
        async with self._session() as session:
            row = await session.get(TicketAttachmentRow, attachment_id)
            return _attachment(row) if row else None

    async def insert_attachments(self, attachments: Sequence[Attachment], activity: Activity) -> list[Attachment]:
        async with self._session() as session:
            session.add_all(
                [
                    TicketAttachmentRow(
                        id=a.id,
                        ticket_id=a.ticket_id,
                        filename=a.filename,
                        size=a.size,
                        content_type=a.content_type,
                        storage_path=a.storage_path,
                        uploaded_by=a.uploaded_by,
                        created_at=a.created_at,
                    )
                    for a in attachments
                ]
            )
            session.add(_activity_row(activity))
            await self._touch(session, activity.ticket_id, activity.created_at)
        return list(attachments)

    async def delete_attachment(self, attachment_id: str, activity: Activity) -> None:
        async with self._session() as session:
            await session.execute(delete(TicketAttachmentRow).where(TicketAttachmentRow.id == attachment_id))
            session.add(_activity_row(activity))

    # ------------------------------------------------------------------
    # Profiles / departments / settings
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Profile | None:
        async with self._session() as session:
            row = await session.get(ProfileRow, user_id)
            return _profile(row) if row else None

    async def get_profiles(self, user_ids: Sequence[str]) -> dict[str, Profile]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid]
        if not ids:
            return {}
        async with self._session() as session:
            result = await session.execute(select(ProfileRow).where(ProfileRow.id.in_(ids)))
            return {row.id: _profile(row) for row in result.scalars()}

    async def find_department_agent(self, department_id: str) -> Profile | None:
        async with self._session() as session:
            result = await session.execute(
                select(ProfileRow)
                .where(ProfileRow.department_id == department_id)
                .where(ProfileRow.role == Role.AGENT.value)
                .order_by(ProfileRow.created_at.asc(), ProfileRow.id)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _profile(row) if row else None

    async def get_department_names(self) -> dict[str, str]:
        async with self._session() as session:
            result = await session.execute(select(DepartmentRow.id, DepartmentRow.name))
            return {dept_id: name for dept_id, name in result.all()}

    async def get_settings(self) -> dict[str, str]:
        async with self._session() as session:
            result = await session.execute(select(SettingRow.key, SettingRow.value))
            return {key: value for key, value in result.all()}

    async def put_settings(self, values: dict[str, str]) -> None:
        if not values:
            return
        now = utc_now()
        statement = pg_insert(SettingRow).values(
            [{"key": key, "value": value, "updated_at": now} for key, value in values.items()]
        )
        statement = statement.on_conflict_do_update(
            index_elements=[SettingRow.key],
            set_={"value": statement.excluded.value, "updated_at": statement.excluded.updated_at},
        )
        async with self._session() as session:
            await session.execute(statement)
