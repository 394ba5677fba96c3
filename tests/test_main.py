"""
HTTP surface tests: FastAPI TestClient over a registry of portal sessions
backed by the in-memory Redis double, the scripted identity provider and a
MockTransport backend.
"""

import json
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from collegeportal import main
from collegeportal.frontend.core.portal_session import PortalSession, PortalSessionRegistry
from collegeportal.frontend.pages.handlers import PageHandlers
from collegeportal.identity.models import AuthResult
from collegeportal.identity.session_store import SESSION_KEY_PREFIX
from collegeportal.ws_events import WS_EVENTS

from .conftest import make_backend_client, make_session, signed_in_result

SID = "sid-http-0001"
COOKIE = main.settings.session_cookie_name


@pytest.fixture
def backend_profile():
    return {"userId": "user-1", "email": "student@example.com", "gpa": None}


@pytest.fixture
def registry(make_store, mock_hub, settings, backend_profile):
    def backend(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/profile/user-1":
            if request.method == "PUT":
                backend_profile.update(json.loads(request.content)["profileData"])
            return httpx.Response(200, json=backend_profile)
        return httpx.Response(200, json={})

    def factory(sid):
        store = make_store(sid)
        api = make_backend_client(backend, token_getter=store.get_access_token)
        return PortalSession(sid, store=store, api=api, ws_hub=mock_hub, settings=settings)

    return PortalSessionRegistry(factory=factory)


@pytest.fixture
def client(registry, fake_redis, fake_provider):
    with patch("collegeportal.main.get_portal_registry", return_value=registry), \
            patch("collegeportal.main.get_redis", return_value=fake_redis), \
            patch("collegeportal.main.get_identity_provider", return_value=fake_provider), \
            patch("collegeportal.main.get_page_handlers", return_value=PageHandlers(dashboard_branch_timeout=2.0)):
        with TestClient(app=main.app, cookies={COOKIE: SID}) as test_client:
            yield test_client


def _sign_in_persisted(fake_redis):
    fake_redis.data[f"{SESSION_KEY_PREFIX}:{SID}"] = json.dumps(make_session().to_dict())


# ═══════════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════════

def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["redis"] == "ok"
    assert body["version"] == main.VERSION


def test_readyz_reports_redis_outage(client, fake_redis):
    fake_redis.ping.side_effect = RedisConnectionError("down")

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["detail"] == {"ok": False, "error": "redis_unavailable"}


def test_new_visitor_gets_session_cookie(client):
    client.cookies.clear()

    response = client.get("/version")

    assert COOKIE in response.cookies


# ═══════════════════════════════════════════════════════════════
# ROUTE GATE
# ═══════════════════════════════════════════════════════════════

def test_anonymous_dashboard_redirects_to_login(client):
    response = client.get("/dashboard", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/login"


def test_incomplete_profile_is_sent_to_student_profile(client, fake_redis):
    _sign_in_persisted(fake_redis)

    response = client.get("/dashboard", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/student-profile"

    profile = client.get("/student-profile").json()
    assert profile["success"] is True
    assert profile["data"]["isComplete"] is False


def test_profile_update_unlocks_dashboard(client, fake_redis):
    _sign_in_persisted(fake_redis)

    updated = client.put("/student-profile", json={"gpa": 3.9, "satScore": 1400})

    assert updated.status_code == 200
    assert updated.json()["data"]["routeState"] == "authenticated_complete"

    dashboard = client.get("/dashboard", follow_redirects=False)
    assert dashboard.status_code == 200
    data = dashboard.json()["data"]
    assert data["errors"] == {}
    assert data["profileCompleteness"] == 40


def test_view_endpoint(client):
    decision = client.get("/view", params={"path": "/scholarships"}).json()

    assert decision["state"] == "unauthenticated"
    assert decision["redirectTo"] == "/login"


# ═══════════════════════════════════════════════════════════════
# AUTH
# ═══════════════════════════════════════════════════════════════

def test_sign_in_failure_returns_provider_error(client, fake_provider):
    fake_provider.sign_in_with_password.return_value = AuthResult.failure("Invalid login credentials", status=400)

    response = client.post("/auth/sign-in", json={"email": "student@example.com", "password": "wrong"})

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Invalid login credentials"


def test_sign_in_success_points_at_next_view(client, fake_provider):
    fake_provider.sign_in_with_password.return_value = signed_in_result(make_session())

    response = client.post("/auth/sign-in", json={"email": "student@example.com", "password": "secret"})

    body = response.json()
    assert response.status_code == 200
    assert body["data"]["session"]["userId"] == "user-1"
    assert "access_token" not in json.dumps(body)
    assert body["redirectTo"] == "/student-profile"


def test_sign_out(client, fake_redis, registry):
    _sign_in_persisted(fake_redis)
    client.get("/auth/session")

    response = client.post("/auth/sign-out")

    assert response.status_code == 200
    assert response.json()["routeState"] == "unauthenticated"
    assert fake_redis.data == {}
    assert SID not in registry


def test_oauth_round_trip(client, fake_provider):
    fake_provider.exchange_code_for_session.return_value = signed_in_result(make_session())

    start = client.get("/auth/oauth/google", params={"return_path": "//evil.test"}, follow_redirects=False)
    assert start.status_code == 303
    assert start.headers["location"].startswith("https://auth.test/authorize?provider=google")

    callback = client.get("/auth/callback", params={"code": "code-1"}, follow_redirects=False)

    assert callback.status_code == 303
    assert callback.headers["location"] == "/student-profile"
    fake_provider.exchange_code_for_session.assert_awaited_once()


def test_sign_up_confirmation_link_signs_in(client, fake_provider):
    fake_provider.sign_up.return_value = AuthResult(data={"user": {"id": "user-1"}, "session": None})
    fake_provider.exchange_code_for_session.return_value = signed_in_result(make_session(provider="email"))

    signup = client.post("/auth/sign-up", json={"email": "student@example.com", "password": "secret"})

    assert signup.status_code == 200
    assert signup.json()["routeState"] == "unauthenticated"
    assert fake_provider.sign_up.await_args.kwargs["code_challenge"]

    callback = client.get("/auth/callback", params={"code": "confirm-1"}, follow_redirects=False)

    assert callback.status_code == 303
    assert callback.headers["location"] == "/student-profile"
    fake_provider.exchange_code_for_session.assert_awaited_once()
    assert client.get("/auth/session").json()["routeState"] == "authenticated_incomplete"


def test_callback_provider_error(client):
    response = client.get(
        "/auth/callback",
        params={"error": "access_denied", "error_description": "Denied"},
        follow_redirects=False,
    )

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Authentication error: Denied", "redirectTo": "/login"}


def test_callback_fragment_error(client):
    response = client.post(
        "/auth/callback",
        json={"redirect_url": "http://portal.test/auth/callback#error=server_error&error_description=Boom"},
    )

    assert response.json()["message"] == "Authentication error: Boom"


def test_callback_without_session_fails(client):
    response = client.get("/auth/callback", follow_redirects=False)

    assert response.json()["status"] == "failed"


def test_update_password_requires_session(client):
    response = client.post("/auth/password", json={"password": "new-secret"})

    assert response.status_code == 401


# ═══════════════════════════════════════════════════════════════
# WEBSOCKET
# ═══════════════════════════════════════════════════════════════

def test_websocket_ready_and_ping(client):
    with client.websocket_connect("/ws", headers={"cookie": f"{COOKIE}={SID}"}) as ws:
        ready = ws.receive_json()
        assert ready["type"] == WS_EVENTS.CONNECTION.READY
        assert ready["payload"]["routeState"] == "unauthenticated"

        ws.send_json({"type": WS_EVENTS.CONNECTION.PING})
        assert ws.receive_json()["type"] == WS_EVENTS.CONNECTION.PONG


def test_websocket_ignores_non_object_messages(client):
    with client.websocket_connect("/ws", headers={"cookie": f"{COOKIE}={SID}"}) as ws:
        ws.receive_json()

        ws.send_json([])
        ws.send_json("ping")
        ws.send_json({"type": WS_EVENTS.CONNECTION.PING})

        assert ws.receive_json()["type"] == WS_EVENTS.CONNECTION.PONG
