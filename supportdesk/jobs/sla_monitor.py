"""
SLA breach monitor.

Periodically scans active tickets and routes one `sla_breach` notification per
overdue ticket. Reported tickets are remembered in-process until their
deadline moves or they leave the active set.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from supportdesk.auth.principal import Principal, Role
from supportdesk.config import get_settings
from supportdesk.kernel.time import Clock, utc_now
from supportdesk.notifications.recipients import NotificationKind
from supportdesk.notifications.router import NotificationRouter
from supportdesk.tickets import sla
from supportdesk.tickets.store import TicketStore

logger = structlog.get_logger()

SYSTEM_PRINCIPAL = Principal(user_id="system", role=Role.ADMIN, full_name="SLA monitor")


class SLAMonitor:
    def __init__(
        self,
        *,
        store: TicketStore,
        router: NotificationRouter,
        clock: Clock = utc_now,
        interval_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._clock = clock
        self._interval_seconds = interval_seconds or get_settings().sla_monitor_interval_seconds
        self._scheduler = AsyncIOScheduler()
        self._lock = asyncio.Lock()
        # ticket id -> deadline already reported
        self._reported: dict[str, datetime] = {}

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            self._scheduler.add_job(
                self.scan,
                trigger=IntervalTrigger(seconds=self._interval_seconds),
                id="sla_breach_scan",
                name="SLA breach scan",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.info("SLA monitor started", interval_seconds=self._interval_seconds)

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("SLA monitor stopped")

    async def scan(self) -> int:
        """Route breaches not yet reported. Returns how many were routed."""
        async with self._lock:
            try:
                tickets = await self._store.list_active_tickets()
            except Exception as exc:
                logger.error("SLA scan failed to load tickets", error=str(exc))
                return 0

            now = self._clock()
            summary = sla.summarize(now, tickets)
            active_ids = {t.id for t in tickets}
            for ticket_id in list(self._reported):
                if ticket_id not in active_ids:
                    del self._reported[ticket_id]

            routed = 0
            for ticket in summary.overdue:
                if self._reported.get(ticket.id) == ticket.sla_due_at:
                    continue
                self._reported[ticket.id] = ticket.sla_due_at
                await self._router.route(
                    NotificationKind.SLA_BREACH,
                    ticket,
                    SYSTEM_PRINCIPAL,
                    {
                        "breach_type": "resolution",
                        "hours_overdue": round(-sla.hours_remaining(now, ticket.sla_due_at), 2),
                    },
                )
                routed += 1

            if routed:
                logger.info("SLA breaches routed", count=routed, overdue=len(summary.overdue))
            return routed
