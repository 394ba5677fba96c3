"""
Shared fixtures: an in-memory Redis double, a scripted identity provider and
helpers to build sessions, backend clients and portal sessions.
"""

import dataclasses
import time
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from collegeportal.backend.api_client import BackendApiClient
from collegeportal.config import get_settings
from collegeportal.frontend.core.portal_session import PortalSession
from collegeportal.identity.models import AuthResult, Session
from collegeportal.identity.pending_action_manager import PendingActionManager
from collegeportal.identity.session_store import SessionStore

BACKEND_URL = "http://backend.test/api"


def make_session(
    user_id: str = "user-1",
    expires_in: int = 3600,
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    provider: str = "google",
) -> Session:
    return Session(
        user_id=user_id,
        email="student@example.com",
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=int(time.time()) + expires_in,
        provider=provider,
        user_metadata={"full_name": "Ada Student", "avatar_url": "https://img.test/ada.png"},
    )


def signed_in_result(session: Session) -> AuthResult:
    return AuthResult(data={"user": {"id": session.user_id, "created_at": "2024-01-01T00:00:00Z"}, "session": session})


def make_fake_redis():
    """MagicMock Redis whose get/setex/delete/exists work on a plain dict."""
    data = {}
    redis_mock = MagicMock()
    redis_mock.data = data

    def setex(key, ttl, value):
        data[key] = value
        return True

    def delete(*keys):
        return sum(1 for key in keys if data.pop(key, None) is not None)

    redis_mock.get.side_effect = lambda key: data.get(key)
    redis_mock.setex.side_effect = setex
    redis_mock.delete.side_effect = delete
    redis_mock.exists.side_effect = lambda *keys: sum(1 for key in keys if key in data)
    redis_mock.ping.return_value = True
    return redis_mock


def make_fake_provider():
    provider = MagicMock()
    provider.enabled = True
    provider.sign_in_with_password = AsyncMock()
    provider.sign_up = AsyncMock()
    provider.sign_out = AsyncMock(return_value=AuthResult(data={}))
    provider.exchange_code_for_session = AsyncMock()
    provider.refresh_session = AsyncMock()
    provider.reset_password_for_email = AsyncMock(return_value=AuthResult(data={}))
    provider.sign_in_with_otp = AsyncMock(return_value=AuthResult(data={"user": None, "session": None}))
    provider.verify_otp = AsyncMock()
    provider.update_user = AsyncMock(return_value=AuthResult(data={"user": {"id": "user-1"}}))
    provider.aclose = AsyncMock()
    provider.authorize_url.side_effect = lambda name, redirect_to, code_challenge, scopes=None: AuthResult(
        data={"provider": name, "url": f"https://auth.test/authorize?provider={name}&code_challenge={code_challenge}"}
    )
    return provider


def make_backend_client(handler, token_getter=None) -> BackendApiClient:
    return BackendApiClient(
        base_url=BACKEND_URL,
        token_getter=token_getter,
        timeout=5.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.fixture
def settings():
    return dataclasses.replace(
        get_settings(),
        backend_api_url=BACKEND_URL,
        public_app_url="http://portal.test",
        callback_wait_s=1.0,
    )


@pytest.fixture
def fake_redis():
    return make_fake_redis()


@pytest.fixture
def fake_provider():
    return make_fake_provider()


@pytest.fixture
def mock_hub():
    hub_mock = MagicMock()
    hub_mock.broadcast = AsyncMock()
    return hub_mock


@pytest.fixture
def make_store(fake_provider, fake_redis, settings):
    def _make(sid: str = "sid-0001-test"):
        return SessionStore(
            sid,
            provider=fake_provider,
            redis_client=fake_redis,
            settings=settings,
            pending_actions=PendingActionManager(fake_redis),
        )
    return _make


@pytest.fixture
def make_portal(make_store, mock_hub, settings):
    """PortalSession over a fake store; ``api`` defaults to a MagicMock backend."""
    def _make(sid: str = "sid-0001-test", api=None):
        store = make_store(sid)
        if api is None:
            api = MagicMock()
            api.get_profile = AsyncMock(return_value={"userId": "user-1", "gpa": 3.8})
            api.create_profile = AsyncMock()
        return PortalSession(sid, store=store, api=api, ws_hub=mock_hub, settings=settings)
    return _make
