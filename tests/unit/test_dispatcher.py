import pytest

from supportdesk.notifications.recipients import EmailJob, NotificationKind
from supportdesk.notifications.templates import TemplateKind
from supportdesk.tickets.state_machine import TicketDraft

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


async def _run_dispatcher(dispatcher) -> None:
    await dispatcher.start()
    await dispatcher.shutdown(drain_timeout=2.0)


async def test_disabled_email_sends_nothing(services, state_machine, principals, gateway):
    await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))

    await _run_dispatcher(services.dispatcher)

    assert gateway.sent == []


async def test_resolved_ticket_emails_creator(services, state_machine, principals, gateway, enable_email):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))
    await state_machine.update_ticket(
        principals["agent"],
        ticket.id,
        {"status": "resolved", "resolution": "Cleaned up logs"},
    )

    await _run_dispatcher(services.dispatcher)

    assert [(e.template, e.recipients) for e in gateway.sent] == [
        (TemplateKind.TICKET_CREATED, ["ops@example.com", "alice@example.com"]),
        (TemplateKind.TICKET_RESOLVED, ["alice@example.com"]),
    ]
    resolved = gateway.sent[1].data
    assert resolved["ticket_ref"] == ticket.ticket_number
    assert resolved["resolution"] == "Cleaned up logs"
    assert resolved["actor_name"] == "Andy Agent"
    assert resolved["ticket_url"].endswith(f"/tickets/{ticket.id}")


async def test_status_change_emails_previous_and_new_status(
    services, state_machine, principals, gateway, enable_email
):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))
    await state_machine.update_ticket(principals["agent"], ticket.id, {"status": "in_progress"})

    await _run_dispatcher(services.dispatcher)

    updated = [e for e in gateway.sent if e.template is TemplateKind.TICKET_UPDATED]
    assert len(updated) == 1
    assert updated[0].data["old_status"] == "open"
    assert updated[0].data["new_status"] == "in_progress"


async def test_per_kind_switch_is_read_at_dispatch_time(
    services, state_machine, principals, gateway, enable_email, store
):
    await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))
    store.settings["notify_on_ticket_created"] = "false"

    await _run_dispatcher(services.dispatcher)

    assert gateway.sent == []


async def test_gateway_failure_does_not_escape_worker(services, state_machine, principals, gateway, enable_email):
    gateway.raise_error = True
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))

    await _run_dispatcher(services.dispatcher)

    assert services.dispatcher.pending == 0
    assert ticket.id in services.store.tickets


async def test_process_reports_gateway_result(services, principals, store, gateway, enable_email, state_machine):
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))
    gateway.succeed = False

    sent = await services.dispatcher.process(
        EmailJob(kind=NotificationKind.CREATED, ticket=ticket, actor=principals["alice"])
    )

    assert sent is False
    assert len(gateway.sent) == 1


async def test_full_queue_drops_jobs(store, gateway, principals, state_machine):
    from supportdesk.notifications.dispatcher import EmailDispatcher

    dispatcher = EmailDispatcher(gateway=gateway, store=store, queue_size=1)
    ticket = await state_machine.create_ticket(principals["alice"], TicketDraft(title="Disk full"))
    job = EmailJob(kind=NotificationKind.CREATED, ticket=ticket, actor=principals["alice"])

    assert dispatcher.submit(job) is True
    assert dispatcher.submit(job) is False
    assert dispatcher.pending == 1
