"""
Notification router.

Given a ticket event, fans out to the realtime hub (awaited in order) and
hands email work to the background dispatcher (never awaited). Realtime
broadcasts are not subject to the email switches.
"""

from __future__ import annotations

from typing import Any

import structlog

from supportdesk.auth.principal import Principal
from supportdesk.notifications.dispatcher import EmailDispatcher
from supportdesk.notifications.recipients import EmailJob, NotificationKind, wants_email
from supportdesk.realtime.hub import RealtimeHub
from supportdesk.tickets.models import Ticket

logger = structlog.get_logger()


class NotificationRouter:
    def __init__(self, *, hub: RealtimeHub, dispatcher: EmailDispatcher | None = None) -> None:
        self._hub = hub
        self._dispatcher = dispatcher

    async def route(
        self,
        kind: NotificationKind,
        ticket: Ticket,
        actor: Principal,
        extra: dict[str, Any] | None = None,
    ) -> None:
        extra = dict(extra or {})
        try:
            await self._dispatch_realtime(kind, ticket, actor, extra)
        except Exception as exc:
            # The mutation has already committed; delivery is best-effort.
            logger.error(
                "Realtime dispatch failed",
                kind=kind.value,
                ticket_id=ticket.id,
                error=str(exc),
            )

        if self._dispatcher is not None and wants_email(kind, ticket, extra):
            self._dispatcher.submit(EmailJob(kind=kind, ticket=ticket, actor=actor, extra=extra))

    async def _dispatch_realtime(
        self,
        kind: NotificationKind,
        ticket: Ticket,
        actor: Principal,
        extra: dict[str, Any],
    ) -> None:
        hub = self._hub
        if kind is NotificationKind.CREATED:
            await hub.notify_new_ticket(ticket, created_by=actor)
        elif kind is NotificationKind.ASSIGNED:
            await hub.notify_ticket_assigned(ticket, assigned_by=actor)
        elif kind is NotificationKind.UPDATED:
            await hub.notify_ticket_updated(
                ticket.id,
                extra.get("changes") or {},
                updated_by=actor,
                is_bulk_update=bool(extra.get("is_bulk_update")),
            )
        elif kind is NotificationKind.MESSAGE_ADDED:
            message = extra.get("message") or {}
            await hub.notify_new_message(
                ticket.id,
                message,
                staff_only=bool(message.get("is_internal")),
            )
        elif kind is NotificationKind.FILES_UPLOADED:
            await hub.notify_files_uploaded(ticket.id, extra.get("files") or [], uploaded_by=actor)
        elif kind is NotificationKind.SLA_BREACH:
            await hub.notify_sla_breach(ticket, breach_type=str(extra.get("breach_type") or "resolution"))
        # RESOLVED is email-only; its realtime counterpart is the ticket_updated event.
