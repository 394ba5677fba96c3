import dataclasses
import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from collegeportal.identity.models import Session
from collegeportal.identity.provider import (
    DisabledIdentityProvider,
    SupabaseIdentityProvider,
    build_identity_provider,
)

SUPABASE_URL = "https://project.supabase.test"

TOKEN_RESPONSE = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 3600,
    "user": {
        "id": "user-1",
        "email": "student@example.com",
        "app_metadata": {"provider": "google"},
        "user_metadata": {"full_name": "Ada Student"},
    },
}


def _provider(handler) -> SupabaseIdentityProvider:
    return SupabaseIdentityProvider(SUPABASE_URL, "anon-key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_password_sign_in():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["apikey"] = request.headers["apikey"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=TOKEN_RESPONSE)

    result = await _provider(handler).sign_in_with_password("student@example.com", "secret")

    assert result.ok
    session = result.data["session"]
    assert isinstance(session, Session)
    assert session.user_id == "user-1"
    assert session.provider == "google"
    assert session.expires_at is not None
    assert seen["url"] == f"{SUPABASE_URL}/auth/v1/token?grant_type=password"
    assert seen["apikey"] == "anon-key"
    assert seen["body"] == {"email": "student@example.com", "password": "secret"}


@pytest.mark.asyncio
async def test_provider_error_is_returned_not_raised():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"})

    result = await _provider(handler).sign_in_with_password("student@example.com", "wrong")

    assert not result.ok
    assert result.error.message == "Invalid login credentials"
    assert result.error.status == 400
    assert result.error.code == "invalid_grant"


@pytest.mark.asyncio
async def test_network_failure_is_reported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await _provider(handler).refresh_session("refresh-1")

    assert result.error.code == "network_error"


@pytest.mark.asyncio
async def test_sign_out_with_expired_token_succeeds():
    def handler(request):
        assert request.headers["Authorization"] == "Bearer access-1"
        return httpx.Response(401, json={"msg": "JWT expired"})

    result = await _provider(handler).sign_out("access-1")

    assert result.ok


@pytest.mark.asyncio
async def test_code_exchange_sends_verifier():
    def handler(request):
        assert request.url.params["grant_type"] == "pkce"
        assert json.loads(request.content) == {"auth_code": "code-1", "code_verifier": "verifier-1"}
        return httpx.Response(200, json=TOKEN_RESPONSE)

    result = await _provider(handler).exchange_code_for_session("code-1", "verifier-1")

    assert result.data["session"].access_token == "access-1"


@pytest.mark.asyncio
async def test_sign_up_pending_confirmation_has_no_session():
    def handler(request):
        assert request.url.params["redirect_to"] == "http://portal.test/auth/callback"
        return httpx.Response(200, json={"id": "user-2", "email": "new@example.com"})

    result = await _provider(handler).sign_up(
        "new@example.com", "secret", redirect_to="http://portal.test/auth/callback",
    )

    assert result.ok
    assert result.data["session"] is None
    assert result.data["user"]["id"] == "user-2"


@pytest.mark.asyncio
async def test_sign_up_sends_pkce_challenge():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/auth/v1/signup"
        assert body["code_challenge"] == "challenge-2"
        assert body["code_challenge_method"] == "s256"
        assert body["data"] == {"full_name": "New Student"}
        return httpx.Response(200, json={"id": "user-2", "email": "new@example.com"})

    result = await _provider(handler).sign_up(
        "new@example.com", "secret",
        redirect_to="http://portal.test/auth/callback",
        data={"full_name": "New Student"},
        code_challenge="challenge-2",
    )

    assert result.ok


@pytest.mark.asyncio
async def test_recover_with_pkce_challenge():
    def handler(request):
        body = json.loads(request.content)
        assert request.url.path == "/auth/v1/recover"
        assert body["code_challenge_method"] == "s256"
        return httpx.Response(200, json={})

    result = await _provider(handler).reset_password_for_email(
        "student@example.com", redirect_to="http://portal.test/auth/callback", code_challenge="challenge",
    )

    assert result.ok


def test_authorize_url():
    provider = SupabaseIdentityProvider(SUPABASE_URL, "anon-key")

    result = provider.authorize_url("google", "http://portal.test/auth/callback", "challenge-1")

    parts = urlsplit(result.data["url"])
    params = parse_qs(parts.query)
    assert parts.path == "/auth/v1/authorize"
    assert params["provider"] == ["google"]
    assert params["code_challenge"] == ["challenge-1"]
    assert params["code_challenge_method"] == ["s256"]
    assert params["redirect_to"] == ["http://portal.test/auth/callback"]


@pytest.mark.asyncio
async def test_disabled_provider():
    provider = DisabledIdentityProvider()

    result = await provider.sign_in_with_password("student@example.com", "secret")

    assert provider.enabled is False
    assert result.error.code == "auth_not_configured"
    assert result.error.status == 503
    assert (await provider.sign_out("token")).ok


def test_build_provider_from_settings(settings):
    assert isinstance(
        build_identity_provider(dataclasses.replace(settings, supabase_url=None, supabase_anon_key=None)),
        DisabledIdentityProvider,
    )
    assert isinstance(
        build_identity_provider(dataclasses.replace(settings, supabase_url=SUPABASE_URL, supabase_anon_key="k")),
        SupabaseIdentityProvider,
    )
