"""HTTP surface tests through FastAPI's TestClient."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from solosession.app import app
from solosession.service.errors import SessionCreationError
from solosession.service.runtime import get_runtime
from solosession.service.sessions import SessionErrorCode, SessionValidation
from solosession.storage.errors import StoreUnavailableError

ISSUER_HEADERS = {"X-Session-Issuer-Key": "test-issuer-secret-0123456789"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _login(client, user_id="u1", **body):
    resp = client.post("/v1/sessions", json={"user_id": user_id, **body}, headers=ISSUER_HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _auth(user_id, session_id):
    return {"X-User-ID": user_id, "session_id": session_id}


def test_login_returns_session(client):
    data = _login(client, user_agent="Firefox", device_info="laptop")
    assert len(data["session_id"]) == 64
    assert data["expires_in"] == 86400
    session = data["session"]
    assert session["userId"] == "u1"
    assert session["sessionId"] == data["session_id"]
    assert session["metadata"]["userAgent"] == "Firefox"
    assert session["metadata"]["deviceInfo"] == "laptop"


def test_login_metadata_defaults_to_request(client):
    data = _login(client)
    assert data["session"]["metadata"]["userAgent"] == "testclient"
    assert data["session"]["metadata"]["ipAddress"] == "testclient"


def test_login_rejects_blank_user(client):
    resp = client.post("/v1/sessions", json={"user_id": "   "}, headers=ISSUER_HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_login_without_issuer_key_is_rejected(client):
    resp = client.post("/v1/sessions", json={"user_id": "u1"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert get_runtime().store.keys() == []


def test_login_with_wrong_issuer_key_is_rejected(client):
    resp = client.post(
        "/v1/sessions",
        json={"user_id": "u1"},
        headers={"X-Session-Issuer-Key": "not-the-issuer-secret"},
    )
    assert resp.status_code == 401
    assert get_runtime().store.keys() == []


def test_login_is_disabled_without_issuer_secret(client):
    get_runtime().settings.session_issuer_secret = None
    resp = client.post("/v1/sessions", json={"user_id": "u1"}, headers=ISSUER_HEADERS)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_current_session(client):
    data = _login(client)
    resp = client.get("/v1/sessions/current", headers=_auth("u1", data["session_id"]))
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["sessionId"] == data["session_id"]


def test_session_token_alone_is_enough(client):
    data = _login(client)
    resp = client.get("/v1/sessions/current", headers={"session_id": data["session_id"]})
    assert resp.status_code == 200
    assert resp.json()["data"]["userId"] == "u1"


def test_missing_credentials(client):
    resp = client.get("/v1/sessions/current")
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == "unauthorized"
    assert error["details"] == {"reason": "INVALID_PARAMETERS"}
    assert error["message"] == "Missing session credentials."


def test_login_elsewhere_signs_out_old_device(client):
    first = _login(client, user_agent="A")
    second = _login(client, user_agent="B")

    resp = client.get("/v1/sessions/current", headers=_auth("u1", first["session_id"]))
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["details"]["reason"] == "INVALID_SESSION"
    assert error["message"] == (
        "You were signed out because your account was used on another device."
    )

    resp = client.get("/v1/sessions/current", headers=_auth("u1", second["session_id"]))
    assert resp.status_code == 200


def test_logout(client):
    data = _login(client)
    headers = _auth("u1", data["session_id"])

    resp = client.delete("/v1/sessions/current", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"user_id": "u1", "removed": True}

    resp = client.get("/v1/sessions/current", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["details"]["reason"] == "INVALID_SESSION"


def test_purge_own_sessions(client):
    data = _login(client)
    headers = _auth("u1", data["session_id"])

    resp = client.delete("/v1/users/u1/sessions", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["removed"] is True
    assert client.get("/v1/sessions/current", headers=headers).status_code == 401


def test_purge_other_user_is_forbidden(client):
    data = _login(client)
    other = _login(client, user_id="u2")

    resp = client.delete("/v1/users/u2/sessions", headers=_auth("u1", data["session_id"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    resp = client.get("/v1/sessions/current", headers=_auth("u2", other["session_id"]))
    assert resp.status_code == 200


def test_transient_verdict_is_503(client):
    get_runtime().sessions.validate_session = AsyncMock(
        return_value=SessionValidation.failure(SessionErrorCode.VALIDATION_ERROR)
    )
    resp = client.get("/v1/sessions/current", headers=_auth("u1", "a" * 64))
    assert resp.status_code == 503
    error = resp.json()["error"]
    assert error["code"] == "service_unavailable"
    assert error["details"]["reason"] == "VALIDATION_ERROR"


def test_expired_session_is_401(client):
    get_runtime().sessions.validate_session = AsyncMock(
        return_value=SessionValidation.failure(SessionErrorCode.SESSION_EXPIRED)
    )
    resp = client.get("/v1/sessions/current", headers=_auth("u1", "a" * 64))
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == "unauthorized"
    assert error["details"] == {"reason": "SESSION_EXPIRED"}
    assert error["message"] == "Your session timed out. Please sign in again."


def test_create_failure_is_server_error(client):
    get_runtime().sessions.create_session = AsyncMock(
        side_effect=SessionCreationError("failed to persist session", detail={"stage": "write"})
    )
    resp = client.post("/v1/sessions", json={"user_id": "u1"}, headers=ISSUER_HEADERS)
    assert resp.status_code == 500
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "server_error"
    assert body["error"]["details"] == {"stage": "write"}


def test_store_outage_during_logout_is_503(client):
    data = _login(client)
    get_runtime().sessions.remove_session = AsyncMock(
        side_effect=StoreUnavailableError("redis del failed")
    )
    resp = client.delete("/v1/sessions/current", headers=_auth("u1", data["session_id"]))
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "service_unavailable"


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_unknown_route_uses_envelope(client):
    resp = client.get("/v1/nope")
    assert resp.status_code == 404
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert body["error"]["details"] == {"detail": "Not Found"}
