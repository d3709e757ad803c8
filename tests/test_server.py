"""HTTP surface tests with FastAPI's TestClient."""

import json

import pytest
from fastapi.testclient import TestClient

from server import create_web_server
from webhooks import WebhookManager, sign_payload, verify_webhook_signature

SERVICE_TOKEN = "svc-secret"
SERVICE_HEADERS = {"Authorization": f"Bearer {SERVICE_TOKEN}"}


@pytest.fixture
def client(orch, db):
    app = create_web_server(orch, db, WebhookManager(db), service_token=SERVICE_TOKEN)
    return TestClient(app)


def _login(client, name, character_id, access_token="t"):
    resp = client.post("/auth/session", json={"name": name, "character_id": character_id,
                                              "access_token": access_token}, headers=SERVICE_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    return {"Authorization": f"Bearer {body['token']}"}, body["user"]["id"]


class TestAuth:
    def test_missing_token(self, client) -> None:
        assert client.post("/api/operations", json={"title": "x"}).status_code == 401

    def test_bad_token(self, client) -> None:
        resp = client.get("/api/me", headers={"Authorization": "Bearer ops_sess_nope"})
        assert resp.status_code == 401

    def test_session_issuing_needs_service_token(self, client, db) -> None:
        _, victim_id = _login(client, "Victim", 777, access_token="token-777")

        anonymous = client.post("/auth/session", json={"name": "attacker", "character_id": 777})
        assert anonymous.status_code == 403
        pilot_headers, _ = _login(client, "Other", 778)
        as_pilot = client.post("/auth/session", json={"name": "attacker", "character_id": 777},
                               headers=pilot_headers)
        assert as_pilot.status_code == 403

        victim = db.get_user(victim_id)
        assert victim.name == "Victim"
        assert victim.access_token == "token-777"

    def test_refresh_without_token_keeps_stored_token(self, client, db) -> None:
        _, user_id = _login(client, "Pilot", 42, access_token="token-42")
        resp = client.post("/auth/session", json={"name": "Pilot Renamed", "character_id": 42},
                           headers=SERVICE_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == user_id
        assert db.get_user(user_id).access_token == "token-42"
        assert db.get_user(user_id).name == "Pilot Renamed"

    def test_logout_invalidates_session(self, client) -> None:
        headers, _ = _login(client, "Dir", 1)
        assert client.post("/auth/logout", headers=headers).json()["success"]
        assert client.get("/api/me", headers=headers).status_code == 401


class TestOperationsApi:
    def test_create_join_status(self, client) -> None:
        director, _ = _login(client, "Dir", 1)
        member, member_id = _login(client, "A", 2)

        created = client.post("/api/operations", json={"title": "Belt"}, headers=director).json()
        op_id = created["operation"]["id"]
        joined = client.post("/api/operations/join", json={"join_code": created["join_code"]}, headers=member)
        assert joined.status_code == 200

        status = client.get(f"/api/operations/{op_id}/status", headers=member).json()
        assert status["active_count"] == 2
        assert status["phase"] == "active"

    def test_error_codes_map_to_http(self, client) -> None:
        director, _ = _login(client, "Dir", 1)
        member, member_id = _login(client, "A", 2)
        created = client.post("/api/operations", json={"title": "Belt"}, headers=director).json()
        op_id = created["operation"]["id"]
        client.post("/api/operations/join", json={"join_code": created["join_code"]}, headers=member)

        again = client.post("/api/operations/join", json={"join_code": created["join_code"]}, headers=member)
        assert again.status_code == 409
        assert again.json()["detail"]["reason"] == "already_active"

        forbidden = client.post(f"/api/operations/{op_id}/actions",
                                json={"action": "kick", "target_user_id": "x"}, headers=member)
        assert forbidden.status_code == 403

        bad_code = client.post("/api/operations/join", json={"join_code": "000000"}, headers=director)
        assert bad_code.status_code == 400

        assert client.get("/api/operations/nope/status", headers=member).status_code == 404


class TestServiceEndpoints:
    def test_sweeps_need_service_token(self, client) -> None:
        assert client.post("/api/sweep/finalize").status_code == 403
        user_headers, _ = _login(client, "Dir", 1)
        assert client.post("/api/sweep/finalize", headers=user_headers).status_code == 403

        resp = client.post("/api/sweep/finalize", headers={"Authorization": f"Bearer {SERVICE_TOKEN}"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "finalized": [], "failed": []}

    def test_webhook_registration_and_delivery_queue(self, client, db, orch, clock) -> None:
        service = {"Authorization": f"Bearer {SERVICE_TOKEN}"}
        resp = client.post("/api/webhooks", json={"url": "https://stats.test/hook",
                                                  "event_types": ["operation_ended"]}, headers=service)
        assert resp.status_code == 200
        secret = resp.json()["secret"]

        director, _ = _login(client, "Dir", 1)
        op_id = client.post("/api/operations", json={"title": "Belt"}, headers=director).json()["operation"]["id"]
        client.post(f"/api/operations/{op_id}/actions", json={"action": "end"}, headers=director)
        clock.advance(seconds=6)
        client.get(f"/api/operations/{op_id}/status", headers=director)
        client.get(f"/api/operations/{op_id}/status", headers=director)

        deliveries = db.get_deliveries_for_event("operation_ended")
        assert len(deliveries) == 1
        assert db.get_deliveries_for_event("operation_created") == []

        payload = deliveries[0].payload
        assert json.loads(payload)["data"]["operation"]["id"] == op_id
        webhook = db.get_webhooks()[0]
        assert verify_webhook_signature(payload, "sha256=" + sign_payload(payload, webhook.secret_hash), secret)

    def test_unknown_event_type_rejected(self, client) -> None:
        service = {"Authorization": f"Bearer {SERVICE_TOKEN}"}
        resp = client.post("/api/webhooks", json={"url": "https://x.test", "event_types": ["nope"]}, headers=service)
        assert resp.status_code == 400

    def test_health(self, client) -> None:
        assert client.get("/health").json() == {"status": "ok"}
