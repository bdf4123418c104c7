import pytest

pytestmark = [pytest.mark.api, pytest.mark.asyncio]


async def _create(async_client, headers, **body):
    body.setdefault("title", "Cannot log in")
    response = await async_client.post("/api/v1/tickets", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def test_requests_without_token_are_rejected(async_client):
    response = await async_client.get("/api/v1/tickets")

    assert response.status_code == 401
    assert response.json()["code"] == "auth.unauthenticated"
    assert response.json()["detail"] == "Access token required"

    response = await async_client.get("/api/v1/tickets", headers={"Authorization": "Bearer forged"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


async def test_create_and_view_ticket(async_client, auth_headers):
    alice = auth_headers("alice")
    created = await _create(async_client, alice, priority="high", tags=["login"])

    assert created["status"] == "open"
    assert created["ticket_number"].startswith("TK-")
    assert created["tags"] == ["login"]

    response = await async_client.get(f"/api/v1/tickets/{created['id']}", headers=alice)
    assert response.status_code == 200
    view = response.json()
    assert view["title"] == "Cannot log in"
    assert view["activities"][0]["details"] == "Ticket created with priority: high"
    assert view["messages"] == []
    assert view["attachments"] == []


async def test_invalid_priority_is_422(async_client, auth_headers, store):
    response = await async_client.post(
        "/api/v1/tickets",
        json={"title": "x", "priority": "critical"},
        headers=auth_headers("alice"),
    )

    assert response.status_code == 422
    assert response.json()["code"] == "request.validation_error"
    assert store.tickets == {}


async def test_foreign_ticket_is_403_and_missing_is_404(async_client, auth_headers):
    created = await _create(async_client, auth_headers("alice"))

    response = await async_client.get(f"/api/v1/tickets/{created['id']}", headers=auth_headers("bob"))
    assert response.status_code == 403
    assert "title" not in response.json()

    response = await async_client.get("/api/v1/tickets/tkt_missing", headers=auth_headers("agent"))
    assert response.status_code == 404
    assert response.json()["code"] == "ticket.not_found"


async def test_list_is_paginated_and_scoped(async_client, auth_headers):
    for i in range(3):
        await _create(async_client, auth_headers("alice"), title=f"Alice {i}")
    await _create(async_client, auth_headers("bob"), title="Bob")

    response = await async_client.get("/api/v1/tickets?limit=2&page=1", headers=auth_headers("alice"))
    assert response.status_code == 200
    payload = response.json()
    assert len(payload["tickets"]) == 2
    assert payload["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

    response = await async_client.get("/api/v1/tickets?search=bob", headers=auth_headers("agent"))
    assert [t["title"] for t in response.json()["tickets"]] == ["Bob"]


async def test_update_permissions(async_client, auth_headers):
    created = await _create(async_client, auth_headers("alice"))
    url = f"/api/v1/tickets/{created['id']}"

    response = await async_client.patch(url, json={"status": "closed"}, headers=auth_headers("alice"))
    assert response.status_code == 403

    response = await async_client.patch(url, json={"title": "Still cannot log in"}, headers=auth_headers("alice"))
    assert response.status_code == 200
    assert response.json()["title"] == "Still cannot log in"

    response = await async_client.patch(
        url,
        json={"status": "resolved", "resolution": "Password reset"},
        headers=auth_headers("agent"),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"


async def test_messages_and_internal_notes(async_client, auth_headers):
    created = await _create(async_client, auth_headers("alice"))
    url = f"/api/v1/tickets/{created['id']}"

    response = await async_client.post(
        f"{url}/messages",
        json={"body": "Escalating", "is_internal": True},
        headers=auth_headers("alice"),
    )
    assert response.status_code == 403

    response = await async_client.post(
        f"{url}/messages",
        json={"body": "Escalating", "is_internal": True},
        headers=auth_headers("agent"),
    )
    assert response.status_code == 201
    assert response.json()["is_internal"] is True

    user_view = (await async_client.get(url, headers=auth_headers("alice"))).json()
    staff_view = (await async_client.get(url, headers=auth_headers("agent"))).json()
    assert user_view["messages"] == []
    assert [m["body"] for m in staff_view["messages"]] == ["Escalating"]


async def test_bulk_update(async_client, auth_headers):
    first = await _create(async_client, auth_headers("alice"))
    second = await _create(async_client, auth_headers("bob"))
    body = {"ticket_ids": [first["id"], second["id"], "tkt_missing"], "updates": {"priority": "urgent"}}

    response = await async_client.patch("/api/v1/tickets/bulk/update", json=body, headers=auth_headers("alice"))
    assert response.status_code == 403

    response = await async_client.patch("/api/v1/tickets/bulk/update", json=body, headers=auth_headers("agent"))
    assert response.status_code == 200
    payload = response.json()
    assert sorted(t["id"] for t in payload["updated"]) == sorted([first["id"], second["id"]])
    assert payload["missing"] == ["tkt_missing"]
    assert all(t["priority"] == "urgent" for t in payload["updated"])


async def test_delete_is_admin_only(async_client, auth_headers, store):
    created = await _create(async_client, auth_headers("alice"))
    url = f"/api/v1/tickets/{created['id']}"

    assert (await async_client.delete(url, headers=auth_headers("agent"))).status_code == 403
    assert (await async_client.delete(url, headers=auth_headers("admin"))).status_code == 204
    assert store.tickets == {}
    assert (await async_client.get(url, headers=auth_headers("admin"))).status_code == 404


async def test_sla_and_analytics_require_staff(async_client, auth_headers):
    await _create(async_client, auth_headers("alice"), priority="urgent")

    assert (await async_client.get("/api/v1/tickets/sla/status", headers=auth_headers("alice"))).status_code == 403

    sla = await async_client.get("/api/v1/tickets/sla/status", headers=auth_headers("agent"))
    assert sla.status_code == 200
    assert sla.json()["on_track_count"] == 1

    analytics = await async_client.get("/api/v1/tickets/analytics/summary", headers=auth_headers("admin"))
    assert analytics.status_code == 200
    assert analytics.json()["priority_distribution"] == {"low": 0, "normal": 0, "high": 0, "urgent": 1}


async def test_health_and_request_id(async_client):
    response = await async_client.get("/health", headers={"X-Request-ID": "req_abc"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req_abc"
    assert response.headers["X-Content-Type-Options"] == "nosniff"

    ready = await async_client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"database": True}


async def test_unknown_assignee_is_404(async_client, auth_headers, store):
    created = await _create(async_client, auth_headers("alice"))

    response = await async_client.patch(
        f"/api/v1/tickets/{created['id']}",
        json={"assigned_to": "ghost"},
        headers=auth_headers("admin"),
    )

    assert response.status_code == 404
    assert response.json()["code"] == "profile.not_found"
    assert store.tickets[created["id"]].assigned_to is None


async def test_dashboard_is_open_to_every_role(async_client, auth_headers):
    await _create(async_client, auth_headers("alice"), priority="urgent")

    mine = await async_client.get("/api/v1/tickets/analytics/dashboard", headers=auth_headers("alice"))
    assert mine.status_code == 200
    assert mine.json()["my_tickets_count"] == 1
    assert mine.json()["is_staff"] is False

    staff = await async_client.get("/api/v1/tickets/analytics/dashboard", headers=auth_headers("agent"))
    assert staff.status_code == 200
    assert len(staff.json()["urgent_tickets"]) == 1


async def test_performance_and_trends_validate_query(async_client, auth_headers):
    await _create(async_client, auth_headers("alice"))
    agent = auth_headers("agent")

    performance = await async_client.get("/api/v1/tickets/analytics/performance?timeframe=7d", headers=agent)
    assert performance.status_code == 200
    assert performance.json()["timeframe"] == "7d"
    assert sum(performance.json()["daily_ticket_volume"].values()) == 1

    trends = await async_client.get("/api/v1/tickets/analytics/trends?period=monthly", headers=agent)
    assert trends.status_code == 200
    assert trends.json()["period"] == "monthly"

    bad = await async_client.get("/api/v1/tickets/analytics/performance?timeframe=1y", headers=agent)
    assert bad.status_code == 422
    forbidden = await async_client.get("/api/v1/tickets/analytics/trends", headers=auth_headers("alice"))
    assert forbidden.status_code == 403
