"""
Support Desk Backend - FastAPI Application

Provides:
- Ticket workflow API (lifecycle, messages, attachments, SLA, analytics)
- Realtime collaboration over WebSocket
- Admin notification settings
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from supportdesk import __version__
from supportdesk.api.middleware import RequestIDMiddleware, SecurityHeadersMiddleware, get_cors_origins
from supportdesk.api.routes import attachments, health, realtime, settings as settings_routes, tickets
from supportdesk.api.services import Services, build_services
from supportdesk.config import get_settings
from supportdesk.db.client import close_db, init_db
from supportdesk.db.ticket_store import SqlTicketStore
from supportdesk.kernel.http.errors import register_exception_handlers
from supportdesk.notifications.email import ResendEmailGateway
from supportdesk.tickets.attachments import LocalAttachmentStorage

_LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging() -> None:
    settings = get_settings()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVEL_MAP.get(settings.log_level.lower(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()
    logger.info("Starting Support Desk backend", version=__version__, environment=settings.environment)

    services: Services | None = getattr(app.state, "services", None)
    owns_db = services is None
    if owns_db:
        await init_db()
        services = build_services(
            store=SqlTicketStore(),
            gateway=ResendEmailGateway(),
            storage=LocalAttachmentStorage(),
        )
        app.state.services = services

    await services.dispatcher.start()
    if settings.sla_monitor_enabled and settings.environment != "test":
        await services.sla_monitor.start()
    else:
        logger.info("SLA monitor disabled in this process")

    yield

    logger.info("Shutting down Support Desk backend")
    await services.sla_monitor.shutdown()
    await services.dispatcher.shutdown()
    await services.hub.close()
    if owns_db:
        await close_db()


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app. Passing `services` skips database wiring (tests)."""
    app = FastAPI(
        title="Support Desk API",
        description="Support ticket workflow engine with realtime collaboration",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    register_exception_handlers(app)

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.mount("/metrics", make_asgi_app())

    app.include_router(health.router, tags=["Health"])
    app.include_router(tickets.router, prefix="/api/v1")
    app.include_router(attachments.router, prefix="/api/v1")
    app.include_router(settings_routes.router, prefix="/api/v1")
    app.include_router(realtime.router, prefix="/api/v1")
    return app


app = create_app()
