"""
Realtime transport.

One WebSocket per client. The bearer token comes from the Authorization
header or the `token` query parameter and is checked once, before any room is
joined. Client frames are JSON objects: `{"action": ..., "data": {...}}`.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from supportdesk.api.dependencies import get_hub, get_services, parse_bearer, require_admin_principal
from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import AuthenticationError
from supportdesk.realtime.connection import Connection
from supportdesk.realtime.events import error_event
from supportdesk.realtime.hub import RealtimeHub
from supportdesk.realtime.rooms import RoleClass, parse_room

logger = structlog.get_logger()

router = APIRouter(tags=["Realtime"])


class AnnouncementRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    level: str = Field(default="info", pattern="^(info|warning|critical)$")
    target_role: RoleClass | None = None


async def _writer(ws: WebSocket, conn: Connection) -> None:
    while True:
        event = await conn.outbox.get()
        if event is None or not conn.alive:
            return
        await ws.send_text(event.to_json())


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket) -> None:
    hub = get_services(ws).hub
    token = parse_bearer(ws.headers.get("authorization")) or ws.query_params.get("token")

    await ws.accept()
    try:
        conn = await hub.connect(token)
    except AuthenticationError as exc:
        await ws.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    writer = asyncio.create_task(_writer(ws, conn))
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame: Any = json.loads(raw)
            except json.JSONDecodeError:
                conn.send(error_event("Malformed message"))
                continue
            if not isinstance(frame, dict) or not isinstance(frame.get("action"), str):
                conn.send(error_event("Malformed message"))
                continue
            data = frame.get("data")
            await hub.handle(conn, frame["action"], data if isinstance(data, dict) else {})
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(conn)
        writer.cancel()
        try:
            await writer
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass


@router.post("/realtime/announcements")
async def send_announcement(
    request: AnnouncementRequest,
    principal: Principal = Depends(require_admin_principal),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    delivered = await hub.system_announcement(
        request.message,
        level=request.level,
        target_role=request.target_role,
    )
    logger.info("System announcement sent", sent_by=principal.user_id, delivered=delivered)
    return {"delivered": delivered}


@router.get("/realtime/online")
async def online_users(
    _: Principal = Depends(require_admin_principal),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    return {"online_count": await hub.online_count()}


@router.get("/realtime/rooms/{room_name}/members")
async def room_members(
    room_name: str,
    _: Principal = Depends(require_admin_principal),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    try:
        room = parse_room(room_name)
    except ValueError:
        return {"room": room_name, "members": []}
    members = await hub.members(room)
    return {
        "room": room.name,
        "members": [
            {"user_id": p.user_id, "name": p.display_name, "role": p.role.value}
            for p in members
        ],
    }
