"""
Portal Session
==============

Binds the per-browser collaborators together. One ``PortalSession`` exists
per ``sid`` cookie:

    SessionStore ──on_change──► ProfileReconciler.reconcile(session)
                 └─on_change──► WebSocket broadcast (auth / profile / route)

    BackendApiClient(token_getter=store.get_access_token)

The reconciler is subscribed before anything else, so by the time the store
clears its loading flag the profile (and therefore completeness) has settled
and the route gate never sees a half-reconciled state.

Registry:
    registry = get_portal_registry()
    portal = registry.get_or_create(sid)     # starts initialize() once
    await portal.ensure_ready(timeout)
    decision = portal.route("/dashboard")
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from ...backend.api_client import BackendApiClient
from ...config import Settings, get_settings
from ...identity.models import AuthEvent, Session
from ...identity.session_store import SessionStore
from ...ws_events import WS_EVENTS
from ...ws_hub import WebSocketHub, hub as default_hub
from .profile_reconciler import ProfileReconciler
from .route_gate import RouteDecision, resolve_route, route_state

logger = logging.getLogger("portal.registry")

_AUTH_EVENT_MESSAGES = {
    AuthEvent.SIGNED_IN: WS_EVENTS.AUTH.SIGNED_IN,
    AuthEvent.SIGNED_OUT: WS_EVENTS.AUTH.SIGNED_OUT,
    AuthEvent.TOKEN_REFRESHED: WS_EVENTS.AUTH.TOKEN_REFRESHED,
}

# Events that keep the same user; an already reconciled profile stays valid
_SAME_USER_EVENTS = (AuthEvent.TOKEN_REFRESHED, AuthEvent.USER_UPDATED)


class PortalSession:

    def __init__(
        self,
        sid: str,
        store: Optional[SessionStore] = None,
        api: Optional[BackendApiClient] = None,
        reconciler: Optional[ProfileReconciler] = None,
        ws_hub: Optional[WebSocketHub] = None,
        settings: Optional[Settings] = None,
    ):
        self.sid = sid
        self.settings = settings or get_settings()
        self.store = store or SessionStore(sid, settings=self.settings)
        self.api = api or BackendApiClient(token_getter=self.store.get_access_token)
        self.reconciler = reconciler or ProfileReconciler(self.api)
        self.hub = ws_hub or default_hub
        self.last_seen = time.monotonic()
        self._init_task: Optional[asyncio.Task] = None

        self.store.on_change(self._on_auth_change)

    # ═══════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    def start(self) -> None:
        """Start restoring the session in the background (idempotent)."""
        if self._init_task is None:
            self._init_task = asyncio.create_task(self.store.initialize())

    async def ensure_ready(self, timeout: Optional[float] = None) -> bool:
        self.touch()
        self.start()
        return await self.store.wait_until_loaded(timeout)

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    # ═══════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════

    @property
    def session(self) -> Optional[Session]:
        return self.store.get_session()

    @property
    def profile(self) -> Optional[Dict[str, Any]]:
        return self.reconciler.state.profile

    @property
    def is_profile_complete(self) -> bool:
        return self.reconciler.state.is_complete

    def route(self, path: Optional[str]) -> RouteDecision:
        return resolve_route(
            path,
            loading=self.store.loading,
            session_present=self.session is not None,
            profile_complete=self.is_profile_complete,
        )

    def snapshot(self) -> Dict[str, Any]:
        session = self.session
        return {
            "loading": self.store.loading,
            "session": session.public_view() if session else None,
            "user": self.store.get_user_data() if session else None,
            "profile": self.reconciler.state.to_dict(),
            "routeState": route_state(self.store.loading, session is not None, self.is_profile_complete).value,
        }

    # ═══════════════════════════════════════════════════════════════
    # CHANGE PROPAGATION
    # ═══════════════════════════════════════════════════════════════

    async def _on_auth_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        keep_profile = (
            event in _SAME_USER_EVENTS
            and session is not None
            and self.reconciler.state.profile is not None
        )
        if not keep_profile:
            await self.reconciler.reconcile(session)

        ws_type = _AUTH_EVENT_MESSAGES.get(event, WS_EVENTS.AUTH.SESSION_CHANGED)
        await self.hub.broadcast(self.sid, {
            "type": ws_type,
            "payload": {"event": event.value, "session": session.public_view() if session else None},
        })
        if self.reconciler.state.error:
            await self.hub.broadcast(self.sid, {
                "type": WS_EVENTS.PROFILE.ERROR,
                "payload": {"error": self.reconciler.state.error},
            })
        elif not keep_profile:
            await self.hub.broadcast(self.sid, {
                "type": WS_EVENTS.PROFILE.RECONCILED,
                "payload": self.reconciler.state.to_dict(),
            })
        await self.publish_route()

    async def publish_route(self) -> None:
        """Push the settled gate state; handlers run before loading clears."""
        state = route_state(False, self.session is not None, self.is_profile_complete)
        await self.hub.broadcast(self.sid, {
            "type": WS_EVENTS.ROUTE.CHANGED,
            "payload": {"state": state.value},
        })

    async def apply_profile_update(self, profile: Optional[Dict[str, Any]]) -> None:
        self.reconciler.apply_update(profile)
        await self.hub.broadcast(self.sid, {
            "type": WS_EVENTS.PROFILE.UPDATED,
            "payload": self.reconciler.state.to_dict(),
        })
        await self.publish_route()


# =============================================================================
# REGISTRY
# =============================================================================

class PortalSessionRegistry:
    """Lazily creates one ``PortalSession`` per sid and forgets idle ones."""

    def __init__(
        self,
        factory: Optional[Callable[[str], PortalSession]] = None,
        max_idle_s: float = 3600.0,
    ):
        self._factory = factory or PortalSession
        self._sessions: Dict[str, PortalSession] = {}
        self.max_idle_s = max_idle_s

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sid: str) -> bool:
        return sid in self._sessions

    def get(self, sid: str) -> Optional[PortalSession]:
        return self._sessions.get(sid)

    def get_or_create(self, sid: str) -> PortalSession:
        portal = self._sessions.get(sid)
        if portal is None:
            self.prune_idle()
            portal = self._factory(sid)

            def discard_on_sign_out(event: AuthEvent, session: Optional[Session]) -> None:
                if event == AuthEvent.SIGNED_OUT:
                    self.discard(sid)

            portal.store.on_change(discard_on_sign_out)
            self._sessions[sid] = portal
            logger.info("[REGISTRY] created sid=%s total=%s", sid[:8], len(self._sessions))
        portal.start()
        portal.touch()
        return portal

    def discard(self, sid: str) -> None:
        if self._sessions.pop(sid, None) is not None:
            logger.info("[REGISTRY] discarded sid=%s total=%s", sid[:8], len(self._sessions))

    def prune_idle(self) -> int:
        cutoff = time.monotonic() - self.max_idle_s
        stale = [sid for sid, portal in self._sessions.items() if portal.last_seen < cutoff and not portal.store.loading]
        for sid in stale:
            self._sessions.pop(sid, None)
        if stale:
            logger.info("[REGISTRY] pruned=%s total=%s", len(stale), len(self._sessions))
        return len(stale)


_portal_registry: Optional[PortalSessionRegistry] = None


def get_portal_registry() -> PortalSessionRegistry:
    """Get singleton instance of PortalSessionRegistry."""
    global _portal_registry
    if _portal_registry is None:
        _portal_registry = PortalSessionRegistry()
    return _portal_registry
