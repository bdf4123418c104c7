"""Ticket email templates."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from html import escape
from typing import Any


class TemplateKind(str, Enum):
    TICKET_CREATED = "ticket_created"
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_UPDATED = "ticket_updated"
    TICKET_RESOLVED = "ticket_resolved"
    TEST = "test"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def _card(rows: list[tuple[str, str]]) -> str:
    body = "".join(f"<div><strong>{escape(label)}</strong>: {escape(value)}</div>" for label, value in rows)
    return (
        '<div style="border:1px solid #e5e7eb; border-radius:12px; padding:12px; background:#fafafa;">'
        f"{body}</div>"
    )


def _wrap(*, heading: str, intro: str, rows: list[tuple[str, str]], link: str | None, signature: str) -> str:
    return f"""
    <div style="font-family: ui-sans-serif, system-ui; line-height: 1.5;">
      <h2 style="margin:0 0 12px 0;">{escape(heading)}</h2>
      <p style="margin:0 0 12px 0;">{escape(intro)}</p>
      {_card(rows)}
      {f'<p style="margin:12px 0 0 0;"><a href="{escape(link)}">View ticket</a></p>' if link else ''}
      <p style="margin:16px 0 0 0; color:#6b7280; font-size:12px;">{escape(signature)}</p>
    </div>
    """.strip()


def _text(*, intro: str, rows: list[tuple[str, str]], link: str | None, signature: str) -> str:
    lines = [intro, ""]
    lines += [f"{label}: {value}" for label, value in rows]
    if link:
        lines += ["", f"View ticket: {link}"]
    lines += ["", signature]
    return "\n".join(lines)


def _render(
    *,
    subject: str,
    heading: str,
    intro: str,
    rows: list[tuple[str, str]],
    data: dict[str, Any],
) -> RenderedEmail:
    link = data.get("ticket_url")
    signature = str(data.get("from_name") or "Support")
    rows = [(label, value) for label, value in rows if value]
    return RenderedEmail(
        subject=subject,
        html=_wrap(heading=heading, intro=intro, rows=rows, link=link, signature=signature),
        text=_text(intro=intro, rows=rows, link=link, signature=signature),
    )


def render_ticket_created_email(data: dict[str, Any]) -> RenderedEmail:
    ref = data.get("ticket_ref", "")
    title = str(data.get("title", ""))
    return _render(
        subject=f"[{ref}] New ticket created: {title}",
        heading="New ticket created",
        intro="A new support ticket has been created.",
        rows=[
            ("Ticket", ref),
            ("Title", title),
            ("Priority", str(data.get("priority") or "")),
            ("Created by", str(data.get("creator_name") or "")),
            ("Description", str(data.get("description") or "")),
        ],
        data=data,
    )


def render_ticket_assigned_email(data: dict[str, Any]) -> RenderedEmail:
    ref = data.get("ticket_ref", "")
    title = str(data.get("title", ""))
    return _render(
        subject=f"[{ref}] Ticket assigned: {title}",
        heading="Ticket assigned",
        intro=f"This ticket has been assigned to {data.get('assignee_name') or 'an agent'}.",
        rows=[
            ("Ticket", ref),
            ("Title", title),
            ("Priority", str(data.get("priority") or "")),
            ("Assigned by", str(data.get("actor_name") or "")),
        ],
        data=data,
    )


def render_ticket_updated_email(data: dict[str, Any]) -> RenderedEmail:
    ref = data.get("ticket_ref", "")
    title = str(data.get("title", ""))
    return _render(
        subject=f"[{ref}] Ticket updated: {title}",
        heading="Ticket updated",
        intro="The status of your ticket has changed.",
        rows=[
            ("Ticket", ref),
            ("Title", title),
            ("Previous status", str(data.get("old_status") or "")),
            ("New status", str(data.get("new_status") or "")),
            ("Updated by", str(data.get("actor_name") or "")),
        ],
        data=data,
    )


def render_ticket_resolved_email(data: dict[str, Any]) -> RenderedEmail:
    ref = data.get("ticket_ref", "")
    title = str(data.get("title", ""))
    return _render(
        subject=f"[{ref}] Ticket resolved: {title}",
        heading="Ticket resolved",
        intro="Your ticket has been resolved.",
        rows=[
            ("Ticket", ref),
            ("Title", title),
            ("Resolution", str(data.get("resolution") or "")),
            ("Resolved by", str(data.get("actor_name") or "")),
        ],
        data=data,
    )


def render_test_email(data: dict[str, Any]) -> RenderedEmail:
    return _render(
        subject="Test email from the support desk",
        heading="Email configuration test",
        intro="Email notifications are configured correctly.",
        rows=[("Requested by", str(data.get("actor_name") or ""))],
        data=data,
    )


_RENDERERS = {
    TemplateKind.TICKET_CREATED: render_ticket_created_email,
    TemplateKind.TICKET_ASSIGNED: render_ticket_assigned_email,
    TemplateKind.TICKET_UPDATED: render_ticket_updated_email,
    TemplateKind.TICKET_RESOLVED: render_ticket_resolved_email,
    TemplateKind.TEST: render_test_email,
}


def render(kind: TemplateKind, data: dict[str, Any]) -> RenderedEmail:
    return _RENDERERS[kind](data)
