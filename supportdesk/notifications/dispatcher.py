"""
Background email dispatch.

Request handlers hand jobs to `submit()`, which never waits on the gateway.
A single worker drains the queue, applies the installation switches, resolves
recipients and sends. Failures are logged and counted, never re-raised.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from prometheus_client import Counter

from supportdesk.config import get_settings
from supportdesk.notifications.email import EmailGateway
from supportdesk.notifications.recipients import (
    EMAIL_TEMPLATES,
    EmailJob,
    is_enabled,
    resolve_recipients,
)
from supportdesk.notifications.settings import NotificationSettingsProvider
from supportdesk.tickets.models import Profile
from supportdesk.tickets.store import TicketStore

logger = structlog.get_logger()

EMAIL_JOBS = Counter(
    "supportdesk_email_jobs_total",
    "Email jobs by outcome",
    ["kind", "outcome"],
)


def _name(profiles: dict[str, Profile], user_id: str | None) -> str | None:
    if not user_id:
        return None
    profile = profiles.get(user_id)
    if profile is None:
        return user_id
    return profile.full_name or profile.email or user_id


def build_template_data(job: EmailJob, profiles: dict[str, Profile], *, from_name: str) -> dict[str, Any]:
    ticket = job.ticket
    previous = job.extra.get("previous") or {}
    return {
        "ticket_ref": ticket.ticket_number,
        "ticket_url": f"{get_settings().app_url.rstrip('/')}/tickets/{ticket.id}",
        "title": ticket.title,
        "description": ticket.description,
        "priority": ticket.priority.value,
        "old_status": previous.get("status"),
        "new_status": ticket.status.value,
        "resolution": ticket.resolution,
        "creator_name": _name(profiles, ticket.created_by),
        "assignee_name": _name(profiles, ticket.assigned_to),
        "actor_name": job.actor.display_name,
        "from_name": from_name,
    }


class EmailDispatcher:
    def __init__(
        self,
        *,
        gateway: EmailGateway,
        store: TicketStore,
        settings_provider: NotificationSettingsProvider | None = None,
        queue_size: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._settings = settings_provider or NotificationSettingsProvider(store)
        size = queue_size if queue_size is not None else get_settings().email_queue_size
        self._queue: asyncio.Queue[EmailJob] = asyncio.Queue(maxsize=max(1, size))
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._shutdown.clear()
            self._task = asyncio.create_task(self._run(), name="email-dispatcher")
            logger.info("Email dispatcher started")

    async def shutdown(self, *, drain_timeout: float = 5.0) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Email dispatcher shutdown with pending jobs", pending=self._queue.qsize())
        self._shutdown.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Email dispatcher stopped")

    def submit(self, job: EmailJob) -> bool:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            EMAIL_JOBS.labels(kind=job.kind.value, outcome="dropped").inc()
            logger.warning("Email job dropped (queue full)", kind=job.kind.value, ticket_id=job.ticket.id)
            return False
        return True

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception as exc:
                EMAIL_JOBS.labels(kind=job.kind.value, outcome="error").inc()
                logger.error(
                    "Email job failed",
                    kind=job.kind.value,
                    ticket_id=job.ticket.id,
                    error=str(exc),
                )
            finally:
                self._queue.task_done()

    async def process(self, job: EmailJob) -> bool:
        """Gate, resolve and send one job. Returns True when the gateway accepted it."""
        template = EMAIL_TEMPLATES.get(job.kind)
        if template is None:
            return False

        settings = await self._settings.load()
        if not is_enabled(settings, job.kind):
            EMAIL_JOBS.labels(kind=job.kind.value, outcome="disabled").inc()
            logger.debug("Email notification disabled", kind=job.kind.value, ticket_id=job.ticket.id)
            return False

        user_ids = [uid for uid in (job.ticket.created_by, job.ticket.assigned_to) if uid]
        profiles = await self._store.get_profiles(user_ids)
        recipients = resolve_recipients(job.kind, job.ticket, settings, profiles)
        if not recipients:
            EMAIL_JOBS.labels(kind=job.kind.value, outcome="no_recipients").inc()
            logger.info("Email notification has no recipients", kind=job.kind.value, ticket_id=job.ticket.id)
            return False

        data = build_template_data(job, profiles, from_name=settings.mail_from_name)
        sent = await self._gateway.send(recipients, template, data)
        EMAIL_JOBS.labels(kind=job.kind.value, outcome="sent" if sent else "failed").inc()
        return sent
