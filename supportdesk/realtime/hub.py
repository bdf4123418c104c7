"""
Realtime hub.

Owns authenticated connections and room membership and fans typed events out
to rooms. One hub instance lives for the life of the process; it is created
in the app lifespan and handed out through dependency injection.

Concurrency:
- `_lock` guards the connection and membership maps.
- Each connection's actions run one at a time under `Connection.lock` and may
  interleave with other connections.
- Delivery is best-effort and at-most-once per connected recipient.

Room access is checked when a ticket room is joined. Losing access afterwards
does not evict a member; it only affects later join attempts.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

import structlog
from prometheus_client import Gauge

from supportdesk.auth.identity import IdentityService
from supportdesk.auth.principal import Principal
from supportdesk.kernel.errors import AuthenticationError
from supportdesk.kernel.time import isoformat_z, utc_now
from supportdesk.realtime.connection import Connection, ConnectionState
from supportdesk.realtime.events import (
    ClientAction,
    PresenceStatus,
    RealtimeEvent,
    ServerEvent,
    error_event,
)
from supportdesk.realtime.rooms import (
    ADMIN_ROOM,
    STAFF_ROOM,
    DepartmentRoom,
    RoleClass,
    RoleRoom,
    Room,
    TicketRoom,
    UserRoom,
    auto_join_rooms,
)
from supportdesk.tickets import policy
from supportdesk.tickets.models import Ticket

logger = structlog.get_logger()

REALTIME_CONNECTIONS = Gauge(
    "supportdesk_realtime_connections",
    "Live realtime connections",
)

TicketLookup = Callable[[str], Awaitable[Ticket | None]]


class RealtimeHub:
    def __init__(
        self,
        *,
        identity: IdentityService,
        ticket_lookup: TicketLookup,
        outbox_size: int = 256,
    ) -> None:
        self._identity = identity
        self._ticket_lookup = ticket_lookup
        self._outbox_size = outbox_size
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[Room, set[str]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: str | None) -> Connection:
        """Authenticate a new connection and auto-join its rooms.

        Raises AuthenticationError before any room is joined.
        """
        conn = Connection(outbox_size=self._outbox_size)
        principal = await self._identity.verify_token(token) if token else None
        if principal is None:
            conn.close()
            logger.info("Realtime connection rejected", connection_id=conn.id)
            raise AuthenticationError(message="Authentication error")
        conn.principal = principal
        conn.state = ConnectionState.AUTHENTICATED
        await self.register(conn)
        return conn

    async def register(self, conn: Connection) -> None:
        if conn.principal is None:
            raise AuthenticationError(message="Authentication error")
        async with self._lock:
            self._connections[conn.id] = conn
            for room in auto_join_rooms(conn.principal):
                self._add_member(room, conn)
            conn.state = ConnectionState.JOINED
            REALTIME_CONNECTIONS.set(len(self._connections))
        logger.info(
            "Realtime connection registered",
            connection_id=conn.id,
            user_id=conn.user_id,
            role=conn.principal.role.value,
            rooms=sorted(room.name for room in conn.rooms),
        )

    async def disconnect(self, conn: Connection) -> None:
        async with self._lock:
            if self._connections.pop(conn.id, None) is None:
                return
            for room in list(conn.rooms):
                self._remove_member(room, conn)
            conn.close()
            REALTIME_CONNECTIONS.set(len(self._connections))
        logger.info("Realtime connection closed", connection_id=conn.id, user_id=conn.user_id)
        if conn.user_id:
            await self.broadcast_all(
                RealtimeEvent(
                    ServerEvent.USER_PRESENCE_UPDATED,
                    {
                        "user_id": conn.user_id,
                        "status": PresenceStatus.OFFLINE.value,
                        "timestamp": isoformat_z(utc_now()),
                    },
                )
            )

    async def close(self) -> None:
        """Drop every connection without presence broadcasts."""
        async with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._rooms.clear()
            REALTIME_CONNECTIONS.set(0)
        logger.info("Realtime hub closed")

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def _add_member(self, room: Room, conn: Connection) -> None:
        self._rooms.setdefault(room, set()).add(conn.id)
        conn.rooms.add(room)

    def _remove_member(self, room: Room, conn: Connection) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn.id)
            if not members:
                del self._rooms[room]
        conn.rooms.discard(room)

    async def members(self, room: Room) -> list[Principal]:
        """Distinct principals with a live connection in `room`."""
        async with self._lock:
            seen: dict[str, Principal] = {}
            for conn_id in self._rooms.get(room, ()):
                conn = self._connections.get(conn_id)
                if conn and conn.principal and conn.principal.user_id not in seen:
                    seen[conn.principal.user_id] = conn.principal
            return list(seen.values())

    async def online_count(self) -> int:
        async with self._lock:
            return len({conn.user_id for conn in self._connections.values() if conn.user_id})

    # ------------------------------------------------------------------
    # Client actions
    # ------------------------------------------------------------------

    async def handle(self, conn: Connection, action: str, data: dict[str, Any] | None = None) -> None:
        """Dispatch one client action. Errors go to `conn` only."""
        data = data or {}
        async with conn.lock:
            if not conn.alive:
                return
            try:
                kind = ClientAction(action)
            except ValueError:
                conn.send(error_event("Unknown action", action=action))
                return

            if kind is ClientAction.UPDATE_PRESENCE:
                await self.update_presence(conn, data.get("status"))
                return

            ticket_id = data.get("ticket_id")
            if not isinstance(ticket_id, str) or not ticket_id:
                conn.send(error_event("ticket_id is required", action=kind.value))
                return

            if kind is ClientAction.JOIN_TICKET:
                await self.join_ticket(conn, ticket_id)
            elif kind is ClientAction.LEAVE_TICKET:
                await self.leave_ticket(conn, ticket_id)
            elif kind is ClientAction.TYPING_START:
                await self.typing(conn, ticket_id, typing=True)
            else:
                await self.typing(conn, ticket_id, typing=False)

    async def join_ticket(self, conn: Connection, ticket_id: str) -> bool:
        principal = conn.principal
        if principal is None:
            return False
        try:
            ticket = await self._ticket_lookup(ticket_id)
        except Exception as exc:
            logger.error("Ticket lookup failed during join", ticket_id=ticket_id, error=str(exc))
            conn.send(error_event("Failed to join ticket", ticket_id=ticket_id))
            return False

        if ticket is None:
            conn.send(error_event("Ticket not found", ticket_id=ticket_id))
            return False
        if not policy.can_view(principal, ticket):
            conn.send(error_event("Access denied", ticket_id=ticket_id))
            return False

        async with self._lock:
            if conn.id not in self._connections:
                return False
            self._add_member(TicketRoom(ticket_id), conn)
        conn.send(RealtimeEvent(ServerEvent.JOINED_TICKET, {"ticket_id": ticket_id}))
        logger.debug("Joined ticket room", user_id=conn.user_id, ticket_id=ticket_id)
        return True

    async def leave_ticket(self, conn: Connection, ticket_id: str) -> None:
        async with self._lock:
            self._remove_member(TicketRoom(ticket_id), conn)
        conn.send(RealtimeEvent(ServerEvent.LEFT_TICKET, {"ticket_id": ticket_id}))

    async def typing(self, conn: Connection, ticket_id: str, *, typing: bool) -> None:
        room = TicketRoom(ticket_id)
        if room not in conn.rooms:
            conn.send(error_event("Not a member of this ticket", ticket_id=ticket_id))
            return
        principal = conn.principal
        kind = ServerEvent.USER_TYPING if typing else ServerEvent.USER_STOPPED_TYPING
        await self.broadcast(
            [room],
            RealtimeEvent(
                kind,
                {
                    "user_id": principal.user_id if principal else None,
                    "user_name": principal.display_name if principal else None,
                    "ticket_id": ticket_id,
                },
            ),
            exclude=conn.id,
        )

    async def update_presence(self, conn: Connection, status: Any) -> None:
        try:
            presence = PresenceStatus(status)
        except ValueError:
            conn.send(error_event("Invalid presence status", status=status))
            return
        await self.broadcast_all(
            RealtimeEvent(
                ServerEvent.USER_PRESENCE_UPDATED,
                {
                    "user_id": conn.user_id,
                    "status": presence.value,
                    "timestamp": isoformat_z(utc_now()),
                },
            )
        )

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        rooms: Iterable[Room],
        event: RealtimeEvent,
        *,
        exclude: str | None = None,
        only: Callable[[Principal], bool] | None = None,
    ) -> int:
        """Deliver `event` once to every member of any of `rooms`.

        Returns the number of connections the event was queued for.
        """
        async with self._lock:
            targets: dict[str, Connection] = {}
            for room in rooms:
                for conn_id in self._rooms.get(room, ()):
                    if conn_id == exclude or conn_id in targets:
                        continue
                    conn = self._connections.get(conn_id)
                    if conn is None or conn.principal is None:
                        continue
                    if only is not None and not only(conn.principal):
                        continue
                    targets[conn_id] = conn
            return sum(1 for conn in targets.values() if conn.send(event))

    async def broadcast_all(self, event: RealtimeEvent, *, exclude: str | None = None) -> int:
        async with self._lock:
            targets = [conn for conn_id, conn in self._connections.items() if conn_id != exclude]
            return sum(1 for conn in targets if conn.send(event))

    # ------------------------------------------------------------------
    # Notification helpers
    # ------------------------------------------------------------------

    async def notify_ticket_updated(
        self,
        ticket_id: str,
        update: dict[str, Any],
        *,
        updated_by: Principal,
        is_bulk_update: bool = False,
    ) -> int:
        return await self.broadcast(
            [TicketRoom(ticket_id)],
            RealtimeEvent(
                ServerEvent.TICKET_UPDATED,
                {
                    "ticket_id": ticket_id,
                    "update": update,
                    "updated_by": {"id": updated_by.user_id, "name": updated_by.display_name},
                    "is_bulk_update": is_bulk_update,
                },
            ),
        )

    async def notify_new_message(
        self,
        ticket_id: str,
        message: dict[str, Any],
        *,
        staff_only: bool = False,
    ) -> int:
        return await self.broadcast(
            [TicketRoom(ticket_id)],
            RealtimeEvent(ServerEvent.NEW_MESSAGE, {"ticket_id": ticket_id, "message": message}),
            only=(lambda p: p.is_staff) if staff_only else None,
        )

    async def notify_ticket_assigned(self, ticket: Ticket, *, assigned_by: Principal) -> int:
        if not ticket.assigned_to:
            return 0
        room = UserRoom(ticket.assigned_to)
        delivered = await self.broadcast(
            [room],
            RealtimeEvent(
                ServerEvent.TICKET_ASSIGNED,
                {
                    "ticket": ticket.to_dict(),
                    "assigned_by": {"id": assigned_by.user_id, "name": assigned_by.display_name},
                },
            ),
        )
        delivered += await self.notify_user(
            ticket.assigned_to,
            {
                "type": "ticket_assigned",
                "title": "Ticket assigned",
                "message": f"You were assigned ticket {ticket.ticket_number}: {ticket.title}",
                "ticket_id": ticket.id,
            },
        )
        return delivered

    async def notify_new_ticket(self, ticket: Ticket, *, created_by: Principal) -> int:
        rooms: list[Room] = [STAFF_ROOM]
        if ticket.department_id:
            rooms.append(DepartmentRoom(ticket.department_id))
        return await self.broadcast(
            rooms,
            RealtimeEvent(
                ServerEvent.NEW_TICKET,
                {
                    "ticket": ticket.to_dict(),
                    "created_by": {"id": created_by.user_id, "name": created_by.display_name},
                },
            ),
        )

    async def notify_user(self, user_id: str, notification: dict[str, Any]) -> int:
        return await self.broadcast(
            [UserRoom(user_id)],
            RealtimeEvent(ServerEvent.NEW_NOTIFICATION, notification),
        )

    async def notify_sla_breach(self, ticket: Ticket, *, breach_type: str) -> int:
        rooms: list[Room] = [ADMIN_ROOM]
        if ticket.assigned_to:
            rooms.append(UserRoom(ticket.assigned_to))
        return await self.broadcast(
            rooms,
            RealtimeEvent(
                ServerEvent.SLA_BREACH,
                {"ticket": ticket.to_dict(), "breach_type": breach_type},
            ),
        )

    async def notify_files_uploaded(
        self,
        ticket_id: str,
        files: list[dict[str, Any]],
        *,
        uploaded_by: Principal,
    ) -> int:
        return await self.broadcast(
            [TicketRoom(ticket_id)],
            RealtimeEvent(
                ServerEvent.FILES_UPLOADED,
                {
                    "ticket_id": ticket_id,
                    "files": files,
                    "uploaded_by": {"id": uploaded_by.user_id, "name": uploaded_by.display_name},
                },
            ),
        )

    async def system_announcement(
        self,
        message: str,
        *,
        level: str = "info",
        target_role: RoleClass | None = None,
    ) -> int:
        event = RealtimeEvent(ServerEvent.SYSTEM_ANNOUNCEMENT, {"message": message, "level": level})
        if target_role is None:
            return await self.broadcast_all(event)
        return await self.broadcast([RoleRoom(target_role)], event)
