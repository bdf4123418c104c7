"""Process-scoped service wiring."""

from __future__ import annotations

from dataclasses import dataclass

from supportdesk.auth.identity import IdentityService, JwtIdentityService
from supportdesk.config import get_settings
from supportdesk.jobs.sla_monitor import SLAMonitor
from supportdesk.kernel.time import Clock, utc_now
from supportdesk.notifications.dispatcher import EmailDispatcher
from supportdesk.notifications.email import EmailGateway
from supportdesk.notifications.router import NotificationRouter
from supportdesk.notifications.settings import NotificationSettingsProvider
from supportdesk.realtime.hub import RealtimeHub
from supportdesk.tickets.attachments import AttachmentService, AttachmentStorage
from supportdesk.tickets.state_machine import TicketStateMachine
from supportdesk.tickets.store import TicketStore


@dataclass
class Services:
    store: TicketStore
    identity: IdentityService
    hub: RealtimeHub
    gateway: EmailGateway
    dispatcher: EmailDispatcher
    router: NotificationRouter
    notification_settings: NotificationSettingsProvider
    tickets: TicketStateMachine
    attachments: AttachmentService
    sla_monitor: SLAMonitor


def build_services(
    *,
    store: TicketStore,
    gateway: EmailGateway,
    storage: AttachmentStorage,
    identity: IdentityService | None = None,
    clock: Clock = utc_now,
) -> Services:
    settings = get_settings()
    identity = identity or JwtIdentityService(profile_lookup=store.get_profile)
    hub = RealtimeHub(
        identity=identity,
        ticket_lookup=store.get_ticket,
        outbox_size=settings.realtime_outbox_size,
    )
    notification_settings = NotificationSettingsProvider(store)
    dispatcher = EmailDispatcher(
        gateway=gateway,
        store=store,
        settings_provider=notification_settings,
        queue_size=settings.email_queue_size,
    )
    router = NotificationRouter(hub=hub, dispatcher=dispatcher)
    return Services(
        store=store,
        identity=identity,
        hub=hub,
        gateway=gateway,
        dispatcher=dispatcher,
        router=router,
        notification_settings=notification_settings,
        tickets=TicketStateMachine(store=store, router=router, storage=storage, clock=clock),
        attachments=AttachmentService(store=store, storage=storage, router=router, clock=clock),
        sla_monitor=SLAMonitor(store=store, router=router, clock=clock),
    )
