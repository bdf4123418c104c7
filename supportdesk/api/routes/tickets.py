"""Ticket API: list, view, create, update, delete, messages, bulk update, SLA and analytics."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from supportdesk.api.dependencies import get_current_principal, get_state_machine
from supportdesk.auth.principal import Principal
from supportdesk.tickets.models import MessageType, Priority, TicketQuery, TicketStatus
from supportdesk.tickets.state_machine import TicketDraft, TicketStateMachine

logger = structlog.get_logger()

router = APIRouter(prefix="/tickets", tags=["Tickets"])


class CreateTicketRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=10000)
    priority: Priority = Priority.NORMAL
    category: str | None = Field(default=None, max_length=100)
    department_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    due_date: datetime | None = None
    assigned_to: str | None = None


class UpdateTicketRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=10000)
    priority: Priority | None = None
    status: TicketStatus | None = None
    category: str | None = Field(default=None, max_length=100)
    department_id: str | None = None
    assigned_to: str | None = None
    tags: list[str] | None = None
    due_date: datetime | None = None
    resolution: str | None = Field(default=None, max_length=10000)


class BulkUpdateRequest(BaseModel):
    ticket_ids: list[str] = Field(..., min_length=1, max_length=100)
    updates: UpdateTicketRequest


class CreateMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=10000)
    is_internal: bool = False
    message_type: MessageType = MessageType.COMMENT


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TicketListResponse(BaseModel):
    tickets: list[dict[str, Any]]
    pagination: PaginationResponse


class BulkUpdateResponse(BaseModel):
    updated: list[dict[str, Any]]
    unchanged: list[str]
    missing: list[str]


@router.get("", response_model=TicketListResponse)
async def list_tickets(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str | None = Query(default=None, max_length=200),
    status: TicketStatus | None = None,
    priority: Priority | None = None,
    category: str | None = None,
    assigned_to: str | None = None,
    department_id: str | None = None,
    sort: Literal["created_at", "updated_at", "priority", "status", "title"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> TicketListResponse:
    result = await tickets.list_tickets(
        principal,
        TicketQuery(
            page=page,
            limit=limit,
            search=search,
            status=status,
            priority=priority,
            category=category,
            assigned_to=assigned_to,
            department_id=department_id,
            sort=sort,
            order=order,
        ),
    )
    return TicketListResponse(
        tickets=[t.to_dict() for t in result.items],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.limit,
            total=result.total,
            total_pages=result.total_pages,
        ),
    )


@router.get("/sla/status")
async def sla_status(
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    summary = await tickets.sla_status(principal)
    return summary.to_dict()


@router.get("/analytics/summary")
async def analytics_summary(
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    return await tickets.analytics_summary(principal)


@router.get("/analytics/dashboard")
async def analytics_dashboard(
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    return await tickets.analytics_dashboard(principal)


@router.get("/analytics/performance")
async def analytics_performance(
    timeframe: Literal["7d", "30d", "90d"] = "30d",
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    return await tickets.analytics_performance(principal, timeframe)


@router.get("/analytics/trends")
async def analytics_trends(
    period: Literal["weekly", "monthly"] = "weekly",
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    return await tickets.analytics_trends(principal, period)


@router.patch("/bulk/update", response_model=BulkUpdateResponse)
async def bulk_update(
    request: BulkUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> BulkUpdateResponse:
    result = await tickets.bulk_update(
        principal,
        request.ticket_ids,
        request.updates.model_dump(exclude_unset=True),
    )
    return BulkUpdateResponse(
        updated=[t.to_dict() for t in result.updated],
        unchanged=result.unchanged,
        missing=result.missing,
    )


@router.get("/{ticket_id}")
async def get_ticket(
    ticket_id: str,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    view = await tickets.get_ticket_view(principal, ticket_id)
    return view.to_dict()


@router.post("", status_code=201)
async def create_ticket(
    request: CreateTicketRequest,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    ticket = await tickets.create_ticket(
        principal,
        TicketDraft(
            title=request.title,
            description=request.description,
            priority=request.priority,
            category=request.category,
            department_id=request.department_id,
            tags=request.tags,
            due_date=request.due_date,
            assigned_to=request.assigned_to,
        ),
    )
    return ticket.to_dict()


@router.patch("/{ticket_id}")
async def update_ticket(
    ticket_id: str,
    request: UpdateTicketRequest,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    ticket = await tickets.update_ticket(principal, ticket_id, request.model_dump(exclude_unset=True))
    return ticket.to_dict()


@router.delete("/{ticket_id}", status_code=204)
async def delete_ticket(
    ticket_id: str,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> Response:
    await tickets.delete_ticket(principal, ticket_id)
    return Response(status_code=204)


@router.post("/{ticket_id}/messages", status_code=201)
async def add_message(
    ticket_id: str,
    request: CreateMessageRequest,
    principal: Principal = Depends(get_current_principal),
    tickets: TicketStateMachine = Depends(get_state_machine),
) -> dict[str, Any]:
    message = await tickets.add_message(
        principal,
        ticket_id,
        request.body,
        is_internal=request.is_internal,
        message_type=request.message_type,
    )
    return message.to_dict()
