from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from supportdesk.db.models import TicketActivityRow, TicketAttachmentRow, TicketMessageRow, TicketRow
from supportdesk.db.ticket_store import SqlTicketStore, like_pattern
from supportdesk.kernel.errors import ConflictError, DependencyFailure, ValidationError
from supportdesk.tickets.ledger import ActivityAction
from supportdesk.tickets.models import Activity, Priority, Ticket, TicketQuery, TicketStatus

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 1, 1, tzinfo=timezone.utc)


@asynccontextmanager
async def _fake_session(session):
    yield session


def _session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


def _patched(session):
    return patch("supportdesk.db.ticket_store.get_db_session", lambda: _fake_session(session))


def _ticket() -> Ticket:
    return Ticket(
        id="tkt_1",
        ticket_number="TK-00000001-001",
        title="Printer jammed",
        description="",
        priority=Priority.NORMAL,
        status=TicketStatus.OPEN,
        created_by="alice",
        created_at=T0,
        updated_at=T0,
    )


def _activity() -> Activity:
    return Activity(
        id="act_1",
        ticket_id="tkt_1",
        actor_id="agent",
        action=ActivityAction.STATUS_CHANGED,
        details="Status changed from open to pending",
        created_at=T1,
    )


def _ticket_row(**overrides) -> SimpleNamespace:
    values = {
        "id": "tkt_1",
        "ticket_number": "TK-00000001-001",
        "title": "Printer jammed",
        "description": None,
        "priority": "normal",
        "status": "pending",
        "created_by": "alice",
        "created_at": T0,
        "updated_at": T1,
        "sla_due_at": None,
        "assigned_to": None,
        "department_id": None,
        "category": None,
        "tags": None,
        "due_date": None,
        "resolution": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _integrity_error(detail: str) -> IntegrityError:
    return IntegrityError("INSERT INTO tickets", {}, Exception(detail))


class TestSessionErrors:
    async def test_unreachable_database_is_dependency_failure(self):
        session = _session()
        session.get = AsyncMock(side_effect=OperationalError("select", {}, Exception("down")))

        with _patched(session), pytest.raises(DependencyFailure) as exc:
            await SqlTicketStore().get_ticket("tkt_1")

        assert exc.value.code == "dependency.database"
        assert exc.value.status_code == 503

    async def test_duplicate_ticket_number_is_conflict(self):
        session = _session()
        session.flush = AsyncMock(
            side_effect=_integrity_error('duplicate key value violates unique constraint "tickets_ticket_number_key"')
        )

        with _patched(session), pytest.raises(ConflictError) as exc:
            await SqlTicketStore().insert_ticket(_ticket(), [])

        assert exc.value.code == "ticket.number_conflict"
        session.add_all.assert_not_called()

    async def test_missing_reference_on_insert_is_validation_error(self):
        session = _session()
        session.flush = AsyncMock(
            side_effect=_integrity_error('violates foreign key constraint "tickets_department_id_fkey"')
        )

        with _patched(session), pytest.raises(ValidationError) as exc:
            await SqlTicketStore().insert_ticket(_ticket(), [])

        assert exc.value.code == "ticket.invalid_reference"

    async def test_missing_reference_on_update_is_validation_error(self):
        session = _session()
        session.execute = AsyncMock(
            side_effect=_integrity_error('violates foreign key constraint "tickets_assigned_to_fkey"')
        )

        with _patched(session), pytest.raises(ValidationError) as exc:
            await SqlTicketStore().update_ticket(
                "tkt_1",
                {"assigned_to": "ghost"},
                expected_updated_at=T0,
                activities=[_activity()],
            )

        assert exc.value.code == "ticket.invalid_reference"


class TestConditionalUpdate:
    async def test_stale_update_returns_none_and_writes_no_history(self):
        session = _session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        session.execute = AsyncMock(return_value=result)

        with _patched(session):
            updated = await SqlTicketStore().update_ticket(
                "tkt_1",
                {"status": TicketStatus.PENDING, "updated_at": T1},
                expected_updated_at=T0,
                activities=[_activity()],
            )

        assert updated is None
        session.add_all.assert_not_called()

    async def test_update_returns_row_and_records_history(self):
        session = _session()
        result = MagicMock()
        result.scalar_one_or_none.return_value = _ticket_row()
        session.execute = AsyncMock(return_value=result)

        with _patched(session):
            updated = await SqlTicketStore().update_ticket(
                "tkt_1",
                {"status": TicketStatus.PENDING, "updated_at": T1},
                expected_updated_at=T0,
                activities=[_activity()],
            )

        assert updated.status is TicketStatus.PENDING
        assert updated.description == ""
        assert updated.tags == ()
        (rows,) = session.add_all.call_args.args
        assert [row.id for row in rows] == ["act_1"]

        statement = session.execute.call_args.args[0]
        params = statement.compile(dialect=postgresql.dialect()).params
        assert params["status"] == "pending"
        assert T0 in params.values()


class TestDeleteCascade:
    async def test_children_are_deleted_before_the_ticket(self):
        session = _session()
        session.execute = AsyncMock(return_value=MagicMock())

        with _patched(session):
            await SqlTicketStore().delete_ticket_cascade("tkt_1")

        tables = [c.args[0].table.name for c in session.execute.call_args_list]
        assert tables == [
            TicketAttachmentRow.__tablename__,
            TicketMessageRow.__tablename__,
            TicketActivityRow.__tablename__,
            TicketRow.__tablename__,
        ]


class TestSearch:
    def test_like_pattern_escapes_wildcards(self):
        assert like_pattern("50%_off") == "%50\\%\\_off%"
        assert like_pattern("C:\\tmp") == "%C:\\\\tmp%"
        assert like_pattern("printer") == "%printer%"

    async def test_search_binds_escaped_pattern(self):
        session = _session()
        session.scalar = AsyncMock(return_value=0)
        result = MagicMock()
        result.scalars.return_value = []
        session.execute = AsyncMock(return_value=result)

        with _patched(session):
            items, total = await SqlTicketStore().list_tickets(TicketQuery(search="100%"))

        assert (items, total) == ([], 0)
        compiled = session.execute.call_args.args[0].compile(dialect=postgresql.dialect())
        assert "ESCAPE" in str(compiled)
        assert "%100\\%%" in compiled.params.values()
