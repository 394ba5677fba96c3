import json
import string

import pytest

from collegeportal.identity.pending_action_manager import (
    PENDING_ACTION_TTL,
    PendingActionManager,
    code_challenge_for,
    generate_code_verifier,
)

from .conftest import make_fake_redis

SID = "sid-pending-0001"


@pytest.fixture
def manager():
    return PendingActionManager(make_fake_redis())


def test_code_challenge_matches_s256_reference():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert code_challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_generated_verifiers_are_valid_and_unique():
    first, second = generate_code_verifier(), generate_code_verifier()

    assert 43 <= len(first) <= 128
    assert set(first) <= set(string.ascii_letters + string.digits + "-._~")
    assert first != second


def test_save_uses_ttl_and_key(manager):
    manager.save_pending_action(SID, "google", "/dashboard", code_verifier="v" * 50)

    key, ttl, raw = manager.redis.setex.call_args.args
    assert key == f"pending_action:{SID}"
    assert ttl == PENDING_ACTION_TTL
    stored = json.loads(raw)
    assert stored["code_verifier"] == "v" * 50
    assert stored["return_path"] == "/dashboard"
    assert stored["action_type"] == "oauth"


def test_complete_is_one_time(manager):
    manager.save_pending_action(SID, "github", "/matching", code_verifier="v" * 50)

    action = manager.complete_pending_action(SID)

    assert action["provider"] == "github"
    assert manager.complete_pending_action(SID) is None
    assert not manager.has_pending_action(SID)


def test_signup_confirmation_is_a_valid_action(manager):
    manager.save_pending_action(SID, "email", "/dashboard", code_verifier="v" * 50, action_type="signup")

    action = manager.complete_pending_action(SID)

    assert action["action_type"] == "signup"
    assert action["provider"] == "email"


def test_latest_save_wins(manager):
    manager.save_pending_action(SID, "google", "/dashboard", code_verifier="a" * 50)
    manager.save_pending_action(SID, "github", "/scholarships", code_verifier="b" * 50)

    assert manager.get_pending_action(SID)["code_verifier"] == "b" * 50


def test_invalid_action_type_rejected(manager):
    with pytest.raises(ValueError):
        manager.save_pending_action(SID, "google", "/dashboard", code_verifier="v" * 50, action_type="payment")


def test_cancel(manager):
    manager.save_pending_action(SID, "email", "/student-profile", code_verifier="v" * 50, action_type="recovery")

    assert manager.cancel_pending_action(SID) is True
    assert manager.get_pending_action(SID) is None
