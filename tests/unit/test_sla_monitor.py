from datetime import timedelta

import pytest

from supportdesk.jobs.sla_monitor import SLAMonitor
from supportdesk.realtime.events import ServerEvent
from supportdesk.tickets.state_machine import TicketDraft
from tests.support.realtime import drain, of_kind

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


@pytest.fixture
def monitor(services, store, fake_clock):
    return SLAMonitor(store=store, router=services.router, clock=fake_clock.now, interval_seconds=60)


async def test_scan_reports_each_breach_once(monitor, state_machine, principals, hub, identity, fake_clock):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Urgent", priority="urgent"))
    await state_machine.create_ticket(principals["alice"], TicketDraft(title="Low", priority="low"))
    admin = await hub.connect(identity.issue("admin"))

    assert await monitor.scan() == 0

    fake_clock.advance(timedelta(hours=5))
    assert await monitor.scan() == 1
    assert await monitor.scan() == 0

    (event,) = of_kind(drain(admin), ServerEvent.SLA_BREACH)
    assert event.payload["ticket"]["id"] == ticket.id
    assert event.payload["breach_type"] == "resolution"


async def test_new_deadline_is_reported_again(monitor, state_machine, principals, fake_clock):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Urgent", priority="urgent"))
    fake_clock.advance(timedelta(hours=30))
    assert await monitor.scan() == 1

    # Lowering priority to high moves the deadline to +24h, still overdue.
    await state_machine.update_ticket(principals["agent"], ticket.id, {"priority": "high"})
    assert await monitor.scan() == 1


async def test_resolved_tickets_are_not_reported(monitor, state_machine, principals, fake_clock):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Urgent", priority="urgent"))
    await state_machine.update_ticket(principals["agent"], ticket.id, {"status": "resolved"})
    fake_clock.advance(timedelta(hours=10))

    assert await monitor.scan() == 0


async def test_start_and_shutdown_schedule_scan(monitor):
    await monitor.start()
    try:
        job = monitor._scheduler.get_job("sla_breach_scan")
        assert job is not None
        assert job.max_instances == 1
    finally:
        await monitor.shutdown()
