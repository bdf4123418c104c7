from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from supportdesk.tickets.models import Priority, Ticket, TicketStatus

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _seed_ticket(store, *, created_by: str = "alice") -> Ticket:
    ticket = Ticket(
        id="tkt_ws",
        ticket_number="TK-00000001-123",
        title="Realtime",
        description="",
        priority=Priority.NORMAL,
        status=TicketStatus.OPEN,
        created_by=created_by,
        created_at=NOW,
        updated_at=NOW,
    )
    store.tickets[ticket.id] = ticket
    return ticket


@pytest.mark.api
def test_websocket_rejects_missing_token(app):
    client = TestClient(app)

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.receive_json()

    assert exc.value.code == 1008


@pytest.mark.api
def test_websocket_join_and_typing(app, store, identity):
    ticket = _seed_ticket(store)
    client = TestClient(app)

    with client.websocket_connect(f"/api/v1/ws?token={identity.issue('alice')}") as alice:
        with client.websocket_connect(
            "/api/v1/ws",
            headers={"Authorization": f"Bearer {identity.issue('agent')}"},
        ) as agent:
            alice.send_json({"action": "join_ticket", "data": {"ticket_id": ticket.id}})
            assert alice.receive_json()["event"] == "joined_ticket"

            agent.send_json({"action": "join_ticket", "data": {"ticket_id": ticket.id}})
            joined = agent.receive_json()
            assert joined == {"event": "joined_ticket", "data": {"ticket_id": ticket.id}, "timestamp": joined["timestamp"]}

            alice.send_json({"action": "typing_start", "data": {"ticket_id": ticket.id}})
            typing = agent.receive_json()
            assert typing["event"] == "user_typing"
            assert typing["data"]["user_id"] == "alice"


@pytest.mark.api
def test_websocket_denies_foreign_ticket_and_bad_frames(app, store, identity):
    ticket = _seed_ticket(store)
    client = TestClient(app)

    with client.websocket_connect(f"/api/v1/ws?token={identity.issue('bob')}") as bob:
        bob.send_json({"action": "join_ticket", "data": {"ticket_id": ticket.id}})
        denied = bob.receive_json()
        assert denied["event"] == "error"
        assert denied["data"]["message"] == "Access denied"

        bob.send_text("not json")
        assert bob.receive_json()["data"]["message"] == "Malformed message"


@pytest.mark.api
@pytest.mark.asyncio
async def test_announcement_and_online_endpoints(async_client, auth_headers, hub, identity):
    await hub.connect(identity.issue("agent"))
    await hub.connect(identity.issue("alice"))

    response = await async_client.post(
        "/api/v1/realtime/announcements",
        json={"message": "Maintenance tonight", "target_role": "staff"},
        headers=auth_headers("admin"),
    )
    assert response.status_code == 200
    assert response.json() == {"delivered": 1}

    online = await async_client.get("/api/v1/realtime/online", headers=auth_headers("admin"))
    assert online.json() == {"online_count": 2}

    members = await async_client.get("/api/v1/realtime/rooms/staff/members", headers=auth_headers("admin"))
    assert [m["user_id"] for m in members.json()["members"]] == ["agent"]

    forbidden = await async_client.get("/api/v1/realtime/online", headers=auth_headers("agent"))
    assert forbidden.status_code == 403
