"""
Pending Action Manager - OAuth redirect state.
==============================================

Keeps what the portal needs to finish an OAuth round-trip while the browser
is away at the identity provider:

    portal -> save pending action -> redirect to provider /authorize
    provider -> /auth/callback?code=... -> complete pending action -> exchange

Redis Key Pattern:
    pending_action:{sid}

TTL: 15 minutes

Security:
    - PKCE code verifier never leaves the server
    - One-time use (deleted after retrieval)
    - Short TTL to prevent replay

Usage:
    manager = PendingActionManager(redis_client)
    verifier = generate_code_verifier()
    manager.save_pending_action(sid, provider="google", return_path="/dashboard",
                                code_verifier=verifier)
    url = provider.authorize_url("google", callback_url, code_challenge_for(verifier))

    # After callback
    action = manager.complete_pending_action(sid)
    if action:
        await provider.exchange_code_for_session(code, action["code_verifier"])
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from ..redis_client import get_redis

logger = logging.getLogger("portal.pending_action")

# =============================================================================
# CONSTANTS
# =============================================================================

PENDING_ACTION_TTL = 900  # 15 minutes
PENDING_ACTION_PREFIX = "pending_action"

SUPPORTED_PROVIDERS = [
    # OAuth providers
    "google",
    "github",
    "azure",
    "apple",
    # Password recovery and sign-up confirmation links
    "email",
]

VALID_ACTION_TYPES = [
    "oauth",
    "recovery",
    "signup",
]


# =============================================================================
# PKCE
# =============================================================================

def generate_code_verifier() -> str:
    """Random PKCE verifier (43-128 chars of the unreserved set)."""
    return generate_token(96)


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return create_s256_code_challenge(code_verifier)


# =============================================================================
# PENDING ACTION MANAGER
# =============================================================================

class PendingActionManager:
    """Stores one pending OAuth redirect per portal session."""

    def __init__(self, redis_client=None):
        self._redis = redis_client

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    def _build_key(self, sid: str) -> str:
        return f"{PENDING_ACTION_PREFIX}:{sid}"

    def save_pending_action(
        self,
        sid: str,
        provider: str,
        return_path: str,
        code_verifier: str,
        action_type: str = "oauth",
        ttl: int = PENDING_ACTION_TTL,
    ) -> None:
        """
        Save the pending redirect.

        A second save for the same sid replaces the first, so only the most
        recent OAuth attempt can complete.
        """
        if action_type not in VALID_ACTION_TYPES:
            raise ValueError(f"Invalid action_type: {action_type}")
        if provider not in SUPPORTED_PROVIDERS:
            logger.warning("[PENDING_ACTION] Unknown provider: %s", provider)

        action = {
            "action_type": action_type,
            "provider": provider,
            "return_path": return_path,
            "code_verifier": code_verifier,
            "initiated_at": datetime.now(timezone.utc).isoformat(),
            "sid": sid,
        }

        try:
            self.redis.setex(self._build_key(sid), ttl, json.dumps(action))
        except Exception as e:
            logger.error("[PENDING_ACTION] Save error: %s", e, exc_info=True)
            raise
        logger.info(
            "[PENDING_ACTION] Saved: action=%s provider=%s sid=%s return_path=%s",
            action_type, provider, sid[:8], return_path)

    def get_pending_action(self, sid: str) -> Optional[Dict[str, Any]]:
        """Read the pending action without consuming it."""
        try:
            raw = self.redis.get(self._build_key(sid))
        except Exception as e:
            logger.error("[PENDING_ACTION] Get error: %s", e, exc_info=True)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw if isinstance(raw, str) else raw.decode())
        except ValueError:
            logger.warning("[PENDING_ACTION] Corrupt entry dropped: sid=%s", sid[:8])
            self.cancel_pending_action(sid)
            return None

    def complete_pending_action(self, sid: str) -> Optional[Dict[str, Any]]:
        """Return the pending action and delete it (one-time use)."""
        action = self.get_pending_action(sid)
        if not action:
            logger.warning("[PENDING_ACTION] Complete failed - not found: sid=%s", sid[:8])
            return None

        try:
            self.redis.delete(self._build_key(sid))
        except Exception as e:
            logger.error("[PENDING_ACTION] Delete error: %s", e, exc_info=True)
        logger.info("[PENDING_ACTION] Completed: provider=%s sid=%s", action.get("provider"), sid[:8])
        return action

    def cancel_pending_action(self, sid: str) -> bool:
        try:
            deleted = self.redis.delete(self._build_key(sid))
        except Exception as e:
            logger.error("[PENDING_ACTION] Cancel error: %s", e, exc_info=True)
            return False
        return bool(deleted)

    def has_pending_action(self, sid: str) -> bool:
        return self.redis.exists(self._build_key(sid)) > 0
