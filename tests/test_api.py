"""
Tests for the HTTP and WebSocket surface. The app's startup hooks are not
run; database and orchestrator are injected through dependency overrides.
"""

from datetime import timedelta
from unittest.mock import patch

import jwt
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from neowatch.config import JWT_ALGORITHM, JWT_SECRET
from neowatch.db import get_db
from neowatch.main import app, get_orchestrator
from neowatch.models import Alert
from neowatch.schemas import FeedResult
from neowatch.services.pipeline import PipelineOrchestrator


def _token(sub, role="user"):
    return jwt.encode({"sub": str(sub), "role": role}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _auth(sub, role="user"):
    return {"Authorization": f"Bearer {_token(sub, role)}"}


@pytest.fixture
def orchestrator(gateway, session_factory, now):
    orchestrator = PipelineOrchestrator(
        gateway=gateway,
        session_factory=session_factory,
        feed_client=lambda start, end: FeedResult(success=True),
        clock=lambda: now,
    )
    yield orchestrator
    orchestrator.shutdown(wait=True)


@pytest.fixture
def client(session_factory, orchestrator):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _add_alert(db, user, created_at, is_read=False):
    alert = Alert(
        user_id=user.id,
        asteroid_id="2000433",
        asteroid_name="433 Eros (A898 PA)",
        type="close_approach",
        severity="danger",
        title="Close Approach Alert: 433 Eros (A898 PA)",
        message="Asteroid 433 Eros (A898 PA) will pass within 3.00 lunar distances of Earth. Risk Score: 82/100",
        data={"risk_score": 82},
        is_read=is_read,
        created_at=created_at,
    )
    db.add(alert)
    db.commit()
    return alert


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["scheduler"] is False


# ============================================================
# ADMIN
# ============================================================

class TestAdminFetch:

    def test_manual_fetch_is_acknowledged_immediately(self, client, orchestrator):
        response = client.post("/api/admin/fetch", json={"mode": "week"}, headers=_auth(1, "admin"))

        assert response.status_code == 202
        body = response.json()
        assert body["message"].startswith("Weekly fetch initiated")
        run = body["run"]
        assert run["pipeline"] == "weekly"
        assert run["trigger"] == "manual"
        assert orchestrator.get_run(run["run_id"]) is not None

    def test_run_can_be_polled(self, client, orchestrator):
        run_id = client.post("/api/admin/fetch", json={"mode": "today"}, headers=_auth(1, "admin")).json()["run"]["run_id"]
        orchestrator.get_run(run_id).wait(5)

        response = client.get(f"/api/admin/runs/{run_id}", headers=_auth(1, "admin"))

        assert response.status_code == 200
        assert response.json()["run"]["status"] == "completed"
        assert response.json()["run"]["result"]["pipeline"] == "daily"

    def test_unknown_run(self, client):
        response = client.get("/api/admin/runs/missing", headers=_auth(1, "admin"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "RUN_NOT_FOUND"

    def test_requires_token(self, client):
        response = client.post("/api/admin/fetch", json={"mode": "today"})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "AUTH_REQUIRED"

    def test_rejects_bad_token(self, client):
        response = client.post(
            "/api/admin/fetch", json={"mode": "today"}, headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "INVALID_TOKEN"

    def test_requires_admin_role(self, client):
        response = client.post("/api/admin/fetch", json={"mode": "today"}, headers=_auth(1))

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "ADMIN_REQUIRED"

    def test_rejects_unknown_mode(self, client):
        response = client.post("/api/admin/fetch", json={"mode": "month"}, headers=_auth(1, "admin"))

        assert response.status_code == 422

    def test_pipeline_unavailable_without_orchestrator(self):
        app.dependency_overrides.clear()
        response = TestClient(app).post("/api/admin/fetch", json={"mode": "today"}, headers=_auth(1, "admin"))

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "PIPELINE_UNAVAILABLE"


class TestAdminReadOnly:

    def test_stats(self, client, make_asteroid, make_user):
        make_asteroid(score=82)
        make_asteroid(neo_id="2", score=20, hazardous=False)
        make_user()

        body = client.get("/api/admin/stats", headers=_auth(1, "admin")).json()

        assert body["asteroids"] == {"total": 2, "hazardous": 1, "high_risk": 1}
        assert body["users"] == 1
        assert body["alerts"] == {"total": 0, "unread": 0}

    def test_lookup_scores_live_record(self, client, raw_neo):
        raw = raw_neo(neo_id="2000433", hazardous=True, diameter_max=1000, lunar=0.5, velocity=30)
        with patch("neowatch.main.fetch_neo_lookup", return_value=raw):
            response = client.get("/api/admin/lookup/2000433", headers=_auth(1, "admin"))

        assert response.status_code == 200
        body = response.json()
        assert body["item"]["neo_reference_id"] == "2000433"
        assert "raw_data" not in body["item"]
        assert body["risk"]["score"] == 100
        assert body["risk"]["category"] == "high"

    def test_lookup_upstream_failure(self, client):
        with patch("neowatch.main.fetch_neo_lookup", return_value=None):
            response = client.get("/api/admin/lookup/404", headers=_auth(1, "admin"))

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "NASA_UPSTREAM_ERROR"


# ============================================================
# ALERTS
# ============================================================

class TestAlertEndpoints:

    @pytest.fixture
    def user(self, db, now, make_user):
        user = make_user()
        for hours in (3, 2, 1):
            _add_alert(db, user, now - timedelta(hours=hours))
        _add_alert(db, user, now - timedelta(hours=4), is_read=True)
        return user

    def test_list_with_pagination(self, client, user):
        body = client.get("/api/alerts?page=1&limit=2", headers=_auth(user.id)).json()

        assert len(body["items"]) == 2
        assert body["unread_count"] == 3
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}

    def test_unread(self, client, user):
        body = client.get("/api/alerts/unread", headers=_auth(user.id)).json()

        assert body["count"] == 3
        assert all(item["is_read"] is False for item in body["items"])

    def test_mark_one_read(self, client, db, user):
        alert_id = db.query(Alert).filter(Alert.is_read.is_(False)).first().id

        response = client.put(f"/api/alerts/{alert_id}/read", headers=_auth(user.id))

        assert response.status_code == 200
        assert response.json()["item"]["is_read"] is True
        assert client.get("/api/alerts/unread", headers=_auth(user.id)).json()["count"] == 2

    def test_mark_missing_alert(self, client, user):
        response = client.put("/api/alerts/9999/read", headers=_auth(user.id))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "ALERT_NOT_FOUND"

    def test_mark_all_read(self, client, user):
        response = client.put("/api/alerts/read-all", headers=_auth(user.id))

        assert response.json()["updated"] == 3
        assert client.get("/api/alerts/unread", headers=_auth(user.id)).json()["count"] == 0

    def test_unknown_user(self, client):
        response = client.get("/api/alerts", headers=_auth(404))

        assert response.status_code == 401


# ============================================================
# WEBSOCKET
# ============================================================

class TestNotificationSocket:

    def test_connect_and_watch(self, client):
        with client.websocket_connect(f"/ws/notifications?token={_token(7)}") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["channels"] == ["broadcast", "user:7"]

            ws.send_json({"type": "watch_asteroid", "asteroid_id": "2000433"})
            assert ws.receive_json() == {"type": "subscribed", "channel": "asteroid:2000433"}

            ws.send_json({"type": "unwatch_asteroid", "asteroid_id": "2000433"})
            assert ws.receive_json() == {"type": "unsubscribed", "channel": "asteroid:2000433"}

            ws.send_json({"type": "watch_asteroid"})
            assert ws.receive_json()["type"] == "error"

    def test_anonymous_gets_broadcast_only(self, client):
        with client.websocket_connect("/ws/notifications") as ws:
            assert ws.receive_json()["channels"] == ["broadcast"]

    def test_invalid_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws/notifications?token=garbage") as ws:
                ws.receive_json()

        assert excinfo.value.code == 4401
