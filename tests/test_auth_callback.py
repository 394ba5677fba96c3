import asyncio
from unittest.mock import AsyncMock

import pytest

from collegeportal.frontend.core.auth_callback import (
    GENERIC_FAILURE_MESSAGE,
    CallbackStatus,
    handle_auth_callback,
    parse_auth_code,
    parse_redirect_error,
)

from .conftest import make_session, signed_in_result

CALLBACK = "http://portal.test/auth/callback"


def test_parse_redirect_error_from_query_and_fragment():
    query = parse_redirect_error(f"{CALLBACK}?error=access_denied&error_description=User+cancelled")
    fragment = parse_redirect_error(f"{CALLBACK}#error=server_error&error_description=Database%20error")

    assert query.error == "access_denied"
    assert query.message == "Authentication error: User cancelled"
    assert fragment.message == "Authentication error: Database error"
    assert parse_redirect_error(f"{CALLBACK}?code=abc") is None
    assert parse_redirect_error(None) is None


def test_fragment_error_takes_precedence():
    error = parse_redirect_error(f"{CALLBACK}?error=query_error#error=fragment_error")

    assert error.error == "fragment_error"
    assert error.message == "Authentication error: fragment_error"


def test_parse_auth_code():
    assert parse_auth_code(f"{CALLBACK}?code=abc123") == "abc123"
    assert parse_auth_code(CALLBACK) is None


@pytest.mark.asyncio
async def test_provider_error_routes_back_to_login(make_portal):
    portal = make_portal()
    await portal.ensure_ready()

    outcome = await handle_auth_callback(portal, f"{CALLBACK}#error=access_denied&error_description=Denied")

    assert outcome.status is CallbackStatus.ERROR
    assert outcome.message == "Authentication error: Denied"
    assert outcome.redirect_to == "/login"


@pytest.mark.asyncio
async def test_no_session_fails(make_portal):
    portal = make_portal()
    await portal.ensure_ready()

    outcome = await handle_auth_callback(portal, CALLBACK)

    assert outcome.status is CallbackStatus.FAILED
    assert outcome.message == GENERIC_FAILURE_MESSAGE
    assert outcome.redirect_to == "/login"


@pytest.mark.asyncio
async def test_waits_for_in_flight_exchange(make_portal, fake_provider):
    """The callback never reports failure while the code exchange is still running."""
    release = asyncio.Event()
    session = make_session()

    async def slow_exchange(code, verifier):
        await release.wait()
        return signed_in_result(session)

    fake_provider.exchange_code_for_session = AsyncMock(side_effect=slow_exchange)
    portal = make_portal()
    await portal.ensure_ready()
    await portal.store.sign_in_with_oauth("google", return_path="/scholarships")

    portal.store.start_code_exchange("code-1")

    pending = await handle_auth_callback(portal, f"{CALLBACK}?code=code-1", wait_timeout=0.01)
    assert pending.status is CallbackStatus.PENDING

    waiter = asyncio.create_task(handle_auth_callback(portal, f"{CALLBACK}?code=code-1", wait_timeout=1.0))
    await asyncio.sleep(0)
    release.set()
    outcome = await waiter

    assert outcome.status is CallbackStatus.REDIRECT
    assert outcome.redirect_to == "/scholarships"


@pytest.mark.asyncio
async def test_incomplete_profile_overrides_return_path(make_portal, fake_provider):
    fake_provider.exchange_code_for_session.return_value = signed_in_result(make_session())
    api = AsyncMock()
    api.get_profile = AsyncMock(return_value={"userId": "user-1", "gpa": None})
    portal = make_portal(api=api)
    await portal.ensure_ready()
    await portal.store.sign_in_with_oauth("google", return_path="/dashboard")
    await portal.store.start_code_exchange("code-1")

    outcome = await handle_auth_callback(portal, f"{CALLBACK}?code=code-1")

    assert outcome.status is CallbackStatus.REDIRECT
    assert outcome.redirect_to == "/student-profile"


@pytest.mark.asyncio
async def test_signed_in_without_return_path_lands_on_dashboard(make_portal, fake_provider):
    fake_provider.sign_in_with_password.return_value = signed_in_result(make_session())
    portal = make_portal()
    await portal.ensure_ready()
    await portal.store.sign_in("student@example.com", "secret")

    outcome = await handle_auth_callback(portal, CALLBACK)

    assert outcome.to_dict() == {"status": "redirect", "message": None, "redirectTo": "/dashboard"}
