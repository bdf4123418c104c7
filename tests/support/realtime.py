from __future__ import annotations

from supportdesk.realtime.connection import Connection
from supportdesk.realtime.events import RealtimeEvent, ServerEvent


def drain(conn: Connection) -> list[RealtimeEvent]:
    """Pop every queued event from a connection's outbox."""
    events: list[RealtimeEvent] = []
    while not conn.outbox.empty():
        event = conn.outbox.get_nowait()
        if event is not None:
            events.append(event)
    return events


def kinds(events: list[RealtimeEvent]) -> list[ServerEvent]:
    return [event.kind for event in events]


def of_kind(events: list[RealtimeEvent], kind: ServerEvent) -> list[RealtimeEvent]:
    return [event for event in events if event.kind is kind]
