"""Realtime connection state."""

from __future__ import annotations

import asyncio
from enum import Enum

import structlog
from prometheus_client import Counter

from supportdesk.auth.principal import Principal
from supportdesk.kernel.ids import new_prefixed_id
from supportdesk.realtime.events import RealtimeEvent
from supportdesk.realtime.rooms import Room

logger = structlog.get_logger()

REALTIME_DROPPED = Counter(
    "supportdesk_realtime_dropped_total",
    "Realtime events dropped before delivery",
    ["reason"],
)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class Connection:
    """One live realtime session.

    Outbound events go through a bounded queue drained by the transport's
    writer task. Delivery is at-most-once: a full queue drops the event.
    `lock` serializes this connection's action handlers.
    """

    def __init__(self, *, outbox_size: int = 256) -> None:
        self.id = new_prefixed_id("conn")
        self.principal: Principal | None = None
        self.state = ConnectionState.CONNECTING
        self.rooms: set[Room] = set()
        self.outbox: asyncio.Queue[RealtimeEvent | None] = asyncio.Queue(maxsize=max(1, outbox_size))
        self.lock = asyncio.Lock()

    @property
    def alive(self) -> bool:
        return self.state is not ConnectionState.DISCONNECTED

    @property
    def user_id(self) -> str | None:
        return self.principal.user_id if self.principal else None

    def send(self, event: RealtimeEvent) -> bool:
        if not self.alive:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            REALTIME_DROPPED.labels(reason="outbox_full").inc()
            logger.warning(
                "Realtime event dropped (outbox full)",
                connection_id=self.id,
                user_id=self.user_id,
                event=event.kind.value,
            )
            return False
        return True

    def close(self) -> None:
        """Mark disconnected and wake the writer so it can exit."""
        self.state = ConnectionState.DISCONNECTED
        self.rooms.clear()
        try:
            self.outbox.put_nowait(None)
        except asyncio.QueueFull:
            # Writer is draining a full queue and will see the state change.
            pass
