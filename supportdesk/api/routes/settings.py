"""Notification settings API (admin only)."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from supportdesk.api.dependencies import get_notification_settings, get_services, require_admin_principal
from supportdesk.api.services import Services
from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import DependencyFailure
from supportdesk.notifications.settings import NotificationSettingsProvider
from supportdesk.notifications.templates import TemplateKind

logger = structlog.get_logger()

router = APIRouter(prefix="/settings", tags=["Settings"])


class EmailSettingsUpdate(BaseModel):
    email_enabled: bool | None = None
    admin_emails: list[str] | None = None
    notify_on_ticket_created: bool | None = None
    notify_on_ticket_assigned: bool | None = None
    notify_on_ticket_updated: bool | None = None
    notify_on_ticket_resolved: bool | None = None
    mail_from_name: str | None = Field(default=None, min_length=1, max_length=100)


class TestEmailRequest(BaseModel):
    to: str | None = Field(default=None, max_length=255)


@router.get("/email")
async def get_email_settings(
    _: Principal = Depends(require_admin_principal),
    provider: NotificationSettingsProvider = Depends(get_notification_settings),
) -> dict[str, Any]:
    settings = await provider.load()
    return settings.to_dict()


@router.put("/email")
async def update_email_settings(
    request: EmailSettingsUpdate,
    principal: Principal = Depends(require_admin_principal),
    provider: NotificationSettingsProvider = Depends(get_notification_settings),
) -> dict[str, Any]:
    settings = await provider.save(request.model_dump(exclude_unset=True))
    logger.info("Email settings saved", updated_by=principal.user_id)
    return settings.to_dict()


@router.post("/email/test")
async def send_test_email(
    request: TestEmailRequest,
    principal: Principal = Depends(require_admin_principal),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    settings = await services.notification_settings.load()
    recipient = request.to or principal.email
    if not recipient:
        recipients = list(settings.admin_emails)
    else:
        recipients = [recipient]

    sent = await services.gateway.send(
        recipients,
        TemplateKind.TEST,
        {"actor_name": principal.display_name, "from_name": settings.mail_from_name},
    )
    if not sent:
        raise DependencyFailure(message="Failed to send test email", code="dependency.email")
    return {"sent": True, "recipients": recipients}
