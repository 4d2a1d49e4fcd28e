"""
test_api.py — HTTP and WebSocket surface.

The app is built around the in-memory engine from conftest, so every
request goes through real routing, role checks and error handlers.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app

ADMIN = {"X-Actor-Id": "1", "X-Actor-Role": "admin"}
OPERATOR = {"X-Actor-Id": "2", "X-Actor-Role": "operator"}
SUBSCRIBER = {"X-Actor-Id": "3", "X-Actor-Role": "subscriber"}

ALERT = {
    "title": "Flood Warning",
    "message": "Evacuate low-lying areas now.",
    "severity": "high",
    "channels": ["email"],
    "targeting": {"roles": ["subscriber"]},
}


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _create_alert(client, **overrides) -> dict:
    resp = client.post("/api/v1/alerts", json={**ALERT, **overrides}, headers=OPERATOR)
    assert resp.status_code == 201, resp.text
    return resp.json()["alert"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Identity & roles
# ═══════════════════════════════════════════════════════════════════════════

class TestAuth:
    """Test actor headers and role checks."""

    def test_missing_headers(self, client):
        resp = client.get("/api/v1/alerts")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_malformed_headers(self, client):
        resp = client.get("/api/v1/alerts", headers={"X-Actor-Id": "abc", "X-Actor-Role": "admin"})
        assert resp.status_code == 401

    def test_subscriber_cannot_create(self, client):
        resp = client.post("/api/v1/alerts", json=ALERT, headers=SUBSCRIBER)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_operator_cannot_read_analytics(self, client):
        assert client.get("/api/v1/alerts/analytics", headers=OPERATOR).status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertRoutes:
    """Test /api/v1/alerts."""

    def test_create_sends(self, client):
        alert = _create_alert(client)
        assert alert["status"] == "sent"
        assert alert["delivery_stats"] == {"total": 4, "sent": 3, "failed": 1, "pending": 0}

    def test_create_invalid(self, client):
        resp = client.post("/api/v1/alerts", json={**ALERT, "title": ""}, headers=OPERATOR)
        assert resp.status_code == 422
        body = resp.json()["error"]
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]["title"] == "Title is required"

    def test_wrong_shape_is_validation_error(self, client):
        resp = client.post("/api/v1/alerts", json={**ALERT, "channels": "email"}, headers=OPERATOR)
        assert resp.status_code == 422
        assert "channels" in resp.json()["error"]["details"]["errors"]

    def test_list_and_get(self, client):
        alert = _create_alert(client)
        listed = client.get("/api/v1/alerts", headers=SUBSCRIBER).json()
        assert listed["count"] == 1
        fetched = client.get(f"/api/v1/alerts/{alert['id']}", headers=SUBSCRIBER).json()
        assert fetched["alert"]["title"] == "Flood Warning"

    def test_get_missing(self, client):
        resp = client.get("/api/v1/alerts/404", headers=SUBSCRIBER)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_update_sent_title_conflict(self, client):
        alert = _create_alert(client)
        resp = client.put(f"/api/v1/alerts/{alert['id']}", json={"title": "Changed"}, headers=OPERATOR)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "IMMUTABLE_SENT_ALERT"

    def test_draft_then_send(self, client):
        draft = _create_alert(client, status="draft")
        resp = client.post(f"/api/v1/alerts/{draft['id']}/send", headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["alert"]["status"] == "sent"

    def test_cancel_window(self, client, clock):
        alert = _create_alert(client)
        clock.advance(minutes=5, seconds=1)
        resp = client.post(f"/api/v1/alerts/{alert['id']}/cancel", headers=OPERATOR)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CANCELLATION_WINDOW_EXPIRED"

    def test_cancel_within_window(self, client, clock):
        alert = _create_alert(client)
        clock.advance(minutes=4, seconds=59)
        resp = client.post(f"/api/v1/alerts/{alert['id']}/cancel", headers=OPERATOR)
        assert resp.json()["alert"]["status"] == "cancelled"

    def test_delete_admin_only(self, client):
        alert = _create_alert(client)
        assert client.delete(f"/api/v1/alerts/{alert['id']}", headers=OPERATOR).status_code == 403
        assert client.delete(f"/api/v1/alerts/{alert['id']}", headers=ADMIN).status_code == 200

    def test_analytics(self, client):
        _create_alert(client)
        body = client.get("/api/v1/alerts/analytics", headers=ADMIN).json()
        assert body["alertCounts"]["sent"] == 1
        assert body["deliveryStats"]["successRate"] == 75.0


class TestAcknowledgmentRoutes:
    """Test /api/v1/alerts/{id}/acknowledgments."""

    def test_acknowledge_then_duplicate(self, client):
        alert = _create_alert(client)
        url = f"/api/v1/alerts/{alert['id']}/acknowledgments"
        first = client.post(url, json={"notes": "Safe"}, headers=SUBSCRIBER)
        assert first.status_code == 200
        assert first.json()["acknowledgment"]["notes"] == "Safe"
        assert first.json()["stats"] == {"total": 4, "acknowledged": 1, "rate": 25.0}

        second = client.post(url, headers=SUBSCRIBER)
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "DUPLICATE_ACKNOWLEDGMENT"

        listed = client.get(url, headers=ADMIN).json()
        assert [a["user_id"] for a in listed["acknowledgments"]] == [3]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Incidents & templates
# ═══════════════════════════════════════════════════════════════════════════

class TestIncidentRoutes:
    """Test /api/v1/incidents."""

    def test_report_and_escalate(self, client):
        created = client.post("/api/v1/incidents", json={
            "title": "Bridge flooding",
            "description": "Water over the deck",
            "severity": "high",
        }, headers=SUBSCRIBER)
        assert created.status_code == 201
        incident_id = created.json()["incident"]["id"]

        resp = client.post(f"/api/v1/incidents/{incident_id}/alert", json={
            "channels": ["email"],
            "targeting": {"roles": ["subscriber"]},
        }, headers=OPERATOR)
        assert resp.status_code == 201
        body = resp.json()
        assert body["incident"]["related_alert_id"] == body["alert"]["id"]
        assert body["alert"]["from_incident"] == incident_id

    def test_list_requires_staff(self, client):
        client.post("/api/v1/incidents", json={
            "title": "Road washout", "description": "Route 9 closed", "severity": "high",
        }, headers=SUBSCRIBER)
        assert client.get("/api/v1/incidents", headers=SUBSCRIBER).status_code == 403
        resp = client.get("/api/v1/incidents", headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["count"] == 1

    def test_reporter_can_read_single_incident(self, client):
        created = client.post("/api/v1/incidents", json={
            "title": "Gas smell", "description": "Near the school", "severity": "medium",
        }, headers=SUBSCRIBER).json()["incident"]
        resp = client.get(f"/api/v1/incidents/{created['id']}", headers=SUBSCRIBER)
        assert resp.status_code == 200

    def test_status_change_requires_staff(self, client):
        created = client.post("/api/v1/incidents", json={
            "title": "Downed line", "description": "Power line on Main St", "severity": "medium",
        }, headers=SUBSCRIBER).json()["incident"]
        url = f"/api/v1/incidents/{created['id']}/status"
        assert client.put(url, json={"status": "closed"}, headers=SUBSCRIBER).status_code == 403
        resp = client.put(url, json={"status": "investigating"}, headers=OPERATOR)
        assert resp.json()["incident"]["status"] == "investigating"


class TestTemplateRoutes:
    """Test /api/v1/templates."""

    def test_create_and_apply(self, client):
        created = client.post("/api/v1/templates", json={
            "name": "evacuation",
            "type": "alert",
            "category": "weather",
            "title": "{{county}} Alert",
            "content": "Evacuate {{county}} now",
        }, headers=OPERATOR)
        assert created.status_code == 201
        template_id = created.json()["template"]["id"]

        resp = client.post(f"/api/v1/templates/{template_id}/apply", json={
            "variables": {"county": "Riverside"},
        }, headers=OPERATOR)
        assert resp.status_code == 201
        body = resp.json()
        assert body["alert"]["title"] == "Riverside Alert"
        assert body["alert"]["message"] == "Evacuate Riverside now"
        assert body["alert"]["status"] == "draft"
        assert body["variables"]["is_valid"] is True

    def test_list_paginated(self, client):
        resp = client.get("/api/v1/templates", headers=OPERATOR)
        assert resp.json()["pagination"] == {"total": 0, "page": 1, "limit": 20, "totalPages": 0}

    def test_reads_require_staff(self, client):
        created = client.post("/api/v1/templates", json={
            "name": "boil-water", "type": "alert", "category": "utility",
            "title": "Boil water", "content": "Boil water in {{district}}",
        }, headers=OPERATOR).json()["template"]
        for url in (
            "/api/v1/templates",
            "/api/v1/templates/categories",
            "/api/v1/templates/variables",
            f"/api/v1/templates/{created['id']}",
        ):
            assert client.get(url, headers=SUBSCRIBER).status_code == 403, url
            assert client.get(url, headers=ADMIN).status_code == 200, url


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Health & WebSocket
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthAndRealtime:
    """Test health checks and the /ws endpoint."""

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert [c["name"] for c in body["components"]] == ["storage", "realtime", "channels"]

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_websocket_join_and_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "join", "userId": 5, "role": "subscriber"})
            joined = ws.receive_json()
            assert joined["event"] == "roomJoined"
            assert joined["payload"]["rooms"] == ["user-5", "subscriber"]

            ws.send_json({"action": "ping"})
            assert ws.receive_json()["event"] == "pong"

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["event"] == "error"
