"""
OAuth Callback Handler
======================

Runs when the browser comes back to ``/auth/callback`` from the identity
provider. Order matters:

    1. wait for the session store's loading flag to clear
       (never read the session while it is still resolving)
    2. provider error in the redirect (query string or fragment)
       -> ERROR, retry link back to login
    3. session present -> REDIRECT to where the route gate sends the user
    4. otherwise       -> FAILED

If loading does not clear within ``wait_timeout`` the outcome is PENDING and
the page polls again; it never reports failure early.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from .route_gate import View

logger = logging.getLogger("portal.callback")

GENERIC_FAILURE_MESSAGE = "Authentication failed. Please try logging in again."
PENDING_MESSAGE = "Completing Authentication..."


class CallbackStatus(str, Enum):
    PENDING = "pending"
    ERROR = "error"
    REDIRECT = "redirect"
    FAILED = "failed"


@dataclass(frozen=True)
class RedirectError:
    error: str
    description: Optional[str] = None

    @property
    def message(self) -> str:
        return f"Authentication error: {self.description or self.error}"


@dataclass(frozen=True)
class CallbackOutcome:
    status: CallbackStatus
    message: Optional[str] = None
    redirect_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"status": self.status.value, "message": self.message, "redirectTo": self.redirect_to}


def _first(params: Dict[str, list], name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


def parse_redirect_error(url: Optional[str]) -> Optional[RedirectError]:
    """Provider error from the fragment or the query string, if any."""
    if not url:
        return None
    parts = urlsplit(url)
    for encoded in (parts.fragment, parts.query):
        params = parse_qs(encoded)
        error = _first(params, "error")
        if error:
            return RedirectError(error=error, description=_first(params, "error_description"))
    return None


def parse_auth_code(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return _first(parse_qs(urlsplit(url).query), "code")


async def handle_auth_callback(portal, redirect_url: Optional[str], wait_timeout: Optional[float] = None) -> CallbackOutcome:
    if not await portal.store.wait_until_loaded(wait_timeout):
        logger.info("[CALLBACK] still loading sid=%s", portal.sid[:8])
        return CallbackOutcome(CallbackStatus.PENDING, PENDING_MESSAGE)

    redirect_error = parse_redirect_error(redirect_url)
    if redirect_error is not None:
        logger.warning("[CALLBACK] provider error sid=%s error=%s", portal.sid[:8], redirect_error.error)
        return CallbackOutcome(CallbackStatus.ERROR, redirect_error.message, View.LOGIN.path)

    if portal.session is not None:
        requested = portal.store.pop_post_auth_path() or View.DASHBOARD.path
        decision = portal.route(requested)
        if decision.view is None:
            return CallbackOutcome(CallbackStatus.PENDING, PENDING_MESSAGE)
        target = decision.redirect_to or requested
        logger.info("[CALLBACK] signed in sid=%s state=%s target=%s", portal.sid[:8], decision.state.value, target)
        return CallbackOutcome(CallbackStatus.REDIRECT, redirect_to=target)

    logger.warning("[CALLBACK] no session after callback sid=%s", portal.sid[:8])
    return CallbackOutcome(CallbackStatus.FAILED, GENERIC_FAILURE_MESSAGE, View.LOGIN.path)
