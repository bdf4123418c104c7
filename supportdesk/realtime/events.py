"""
Realtime event types.

Every server event carries a kind, a payload and a timestamp.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from supportdesk.kernel.time import isoformat_z, utc_now


class ServerEvent(str, Enum):
    """Events the server pushes to connections."""

    JOINED_TICKET = "joined_ticket"
    LEFT_TICKET = "left_ticket"
    ERROR = "error"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    USER_PRESENCE_UPDATED = "user_presence_updated"
    TICKET_UPDATED = "ticket_updated"
    NEW_MESSAGE = "new_message"
    TICKET_ASSIGNED = "ticket_assigned"
    NEW_TICKET = "new_ticket"
    NEW_NOTIFICATION = "new_notification"
    SLA_BREACH = "sla_breach"
    SYSTEM_ANNOUNCEMENT = "system_announcement"
    FILES_UPLOADED = "files_uploaded"


class ClientAction(str, Enum):
    """Actions a connected client may issue."""

    JOIN_TICKET = "join_ticket"
    LEAVE_TICKET = "leave_ticket"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    UPDATE_PRESENCE = "update_presence"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


@dataclass(frozen=True)
class RealtimeEvent:
    kind: ServerEvent
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "data": self.payload,
            "timestamp": isoformat_z(self.timestamp),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def error_event(message: str, **extra: Any) -> RealtimeEvent:
    return RealtimeEvent(ServerEvent.ERROR, {"message": message, **extra})
