"""Email gateway backed by the Resend HTTP API."""

from __future__ import annotations

from typing import Any, Iterable, Protocol

import httpx
import structlog

from supportdesk.config import get_settings
from supportdesk.kernel.http.retry import request_with_retry
from supportdesk.notifications.templates import TemplateKind, render

logger = structlog.get_logger()


class EmailGateway(Protocol):
    async def send(
        self,
        recipients: Iterable[str],
        template_kind: TemplateKind,
        template_data: dict[str, Any],
    ) -> bool: ...


def dedupe_emails(emails: Iterable[str | None]) -> list[str]:
    seen: set[str] = set()
    deduped: list[str] = []
    for email in emails:
        if not email:
            continue
        normalized = email.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped


class ResendEmailGateway:
    def __init__(self, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def send(
        self,
        recipients: Iterable[str],
        template_kind: TemplateKind,
        template_data: dict[str, Any],
    ) -> bool:
        settings = get_settings()

        if not settings.resend_api_key or not settings.resend_from:
            logger.info(
                "Resend email skipped (missing configuration)",
                has_api_key=bool(settings.resend_api_key),
                has_from=bool(settings.resend_from),
            )
            return False

        to_emails = dedupe_emails(recipients)
        if not to_emails:
            logger.info("Resend email skipped (no recipients)", template=template_kind.value)
            return False

        rendered = render(template_kind, template_data)
        from_name = template_data.get("from_name")
        payload: dict[str, object] = {
            "from": f"{from_name} <{settings.resend_from}>" if from_name else settings.resend_from,
            "to": to_emails,
            "subject": rendered.subject,
            "html": rendered.html,
            "text": rendered.text,
            "tags": [{"name": "template", "value": template_kind.value}],
        }
        if settings.resend_reply_to:
            payload["reply_to"] = settings.resend_reply_to

        url = settings.resend_api_url.rstrip("/") + "/emails"
        headers = {
            "Authorization": f"Bearer {settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        if self._client is not None:
            response = await request_with_retry(self._client, "POST", url, headers=headers, json=payload)
        else:
            async with httpx.AsyncClient(timeout=settings.resend_timeout_seconds) as client:
                response = await request_with_retry(client, "POST", url, headers=headers, json=payload)

        if response.status_code >= 400:
            logger.warning(
                "Resend email failed",
                subject=rendered.subject,
                status_code=response.status_code,
                body=response.text,
            )
            return False

        logger.info(
            "Resend email sent",
            subject=rendered.subject,
            recipient_count=len(to_emails),
        )
        return True
