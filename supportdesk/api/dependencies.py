"""FastAPI dependencies for services and the calling principal."""

from __future__ import annotations

from fastapi import Depends, Header, Request
from starlette.requests import HTTPConnection

from supportdesk.api.services import Services
from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import AuthenticationError
from supportdesk.notifications.settings import NotificationSettingsProvider
from supportdesk.realtime.hub import RealtimeHub
from supportdesk.tickets import policy
from supportdesk.tickets.attachments import AttachmentService
from supportdesk.tickets.state_machine import TicketStateMachine


def parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_services(conn: HTTPConnection) -> Services:
    services = getattr(conn.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized. Is the app lifespan running?")
    return services


def get_hub(services: Services = Depends(get_services)) -> RealtimeHub:
    return services.hub


def get_state_machine(services: Services = Depends(get_services)) -> TicketStateMachine:
    return services.tickets


def get_attachment_service(services: Services = Depends(get_services)) -> AttachmentService:
    return services.attachments


def get_notification_settings(services: Services = Depends(get_services)) -> NotificationSettingsProvider:
    return services.notification_settings


async def get_current_principal(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Principal:
    """Resolve the bearer token before any route logic runs."""
    token = parse_bearer(authorization)
    if not token:
        raise AuthenticationError(message="Access token required")
    principal = await get_services(request).identity.verify_token(token)
    if principal is None:
        raise AuthenticationError(message="Invalid or expired token")
    return principal


async def require_admin_principal(principal: Principal = Depends(get_current_principal)) -> Principal:
    policy.require_admin(principal)
    return principal
