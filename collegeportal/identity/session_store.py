"""
Session Store
=============

Owns the identity-provider session of one portal session (one browser ``sid``).
It is the only writer of the ``Session`` snapshot; every other component reads
it through ``get_session()`` or through change notifications.

Architecture:
    SessionStore ──► IdentityProvider (Supabase REST)
         │
         ├──► Redis  auth_session:{sid}   persisted session (restored on start)
         ├──► Redis  user_mirror:{sid}    basic user attributes for the UI
         ├──► Redis  pending_action:{sid} OAuth / recovery / sign-up PKCE state
         └──► on_change handlers         (event, session), awaited in order

Lifecycle:
    store = SessionStore(sid, provider, redis_client)
    await store.initialize()          # restore -> refresh/drop -> INITIAL_SESSION
    ...
    await store.sign_out()            # clears persisted session and the mirror

Loading flag:
    ``loading`` is True from construction until ``initialize()`` has finished
    notifying its handlers, and again while a session-materializing operation
    (sign in, sign up, OTP verification, code exchange) runs. Readers that must
    not conclude "no session" too early await ``wait_until_loaded()``.

Every auth operation returns the provider's ``AuthResult`` unchanged; storage
and provider failures never raise past this class.
"""

import asyncio
import inspect
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from ..config import Settings, get_settings
from ..redis_client import get_redis
from .models import AuthEvent, AuthResult, Session
from .pending_action_manager import (
    PendingActionManager,
    code_challenge_for,
    generate_code_verifier,
)
from .provider import IdentityProvider, get_identity_provider

logger = logging.getLogger("portal.session")

SESSION_KEY_PREFIX = "auth_session"
USER_MIRROR_KEY_PREFIX = "user_mirror"

ChangeHandler = Callable[[AuthEvent, Optional[Session]], Any]


class SessionStore:

    def __init__(
        self,
        sid: str,
        provider: Optional[IdentityProvider] = None,
        redis_client=None,
        settings: Optional[Settings] = None,
        pending_actions: Optional[PendingActionManager] = None,
    ):
        self.sid = sid
        self._provider = provider
        self._redis = redis_client
        self._settings = settings
        self._pending_actions = pending_actions

        self._session: Optional[Session] = None
        self._handlers: List[ChangeHandler] = []
        self._initialized = False
        self._post_auth_path: Optional[str] = None

        # initialize() holds one loading slot until it settles
        self._loading_count = 1
        self._idle = asyncio.Event()
        self._refresh_lock = asyncio.Lock()
        # bumped on every session write; an in-flight refresh checks it
        self._generation = 0

    # ═══════════════════════════════════════════════════════════════
    # COLLABORATORS
    # ═══════════════════════════════════════════════════════════════

    @property
    def provider(self) -> IdentityProvider:
        if self._provider is None:
            self._provider = get_identity_provider()
        return self._provider

    @property
    def redis(self):
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def pending_actions(self) -> PendingActionManager:
        if self._pending_actions is None:
            self._pending_actions = PendingActionManager(self._redis)
        return self._pending_actions

    # ═══════════════════════════════════════════════════════════════
    # LOADING FLAG
    # ═══════════════════════════════════════════════════════════════

    @property
    def loading(self) -> bool:
        return self._loading_count > 0

    def _acquire_loading(self) -> None:
        self._loading_count += 1
        self._idle.clear()

    @contextmanager
    def _loading_scope(self):
        self._acquire_loading()
        try:
            yield
        finally:
            self._release_loading()

    def _release_loading(self) -> None:
        self._loading_count = max(0, self._loading_count - 1)
        if self._loading_count == 0:
            self._idle.set()

    async def wait_until_loaded(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loading flag to clear. Returns False on timeout."""
        if not self.loading:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ═══════════════════════════════════════════════════════════════
    # SESSION ACCESS
    # ═══════════════════════════════════════════════════════════════

    def get_session(self) -> Optional[Session]:
        return self._session

    async def get_access_token(self) -> Optional[str]:
        """Current access token, refreshed first when it is about to expire."""
        session = self._session
        if session is None:
            return None
        if session.is_expired():
            session = await self._refresh(session, emit=True)
        return session.access_token if session else None

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Register ``handler(event, session)``; returns the unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def pop_post_auth_path(self) -> Optional[str]:
        """Path the user asked for before the last OAuth redirect (read once)."""
        path, self._post_auth_path = self._post_auth_path, None
        return path

    async def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        logger.info(
            "[SESSION] event=%s sid=%s user=%s handlers=%s",
            event.value, self.sid[:8], session.user_id if session else None, len(self._handlers),
        )
        for handler in list(self._handlers):
            try:
                result = handler(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("[SESSION] change handler failed event=%s error=%s", event.value, repr(e), exc_info=True)

    # ═══════════════════════════════════════════════════════════════
    # PERSISTENCE (Redis)
    # ═══════════════════════════════════════════════════════════════

    def _session_key(self) -> str:
        return f"{SESSION_KEY_PREFIX}:{self.sid}"

    def _mirror_key(self) -> str:
        return f"{USER_MIRROR_KEY_PREFIX}:{self.sid}"

    def _persist(self, session: Session) -> None:
        try:
            self.redis.setex(self._session_key(), self.settings.session_ttl_s, json.dumps(session.to_dict()))
        except RedisError as e:
            logger.error("[SESSION] persist failed sid=%s error=%s", self.sid[:8], repr(e))

    def _restore(self) -> Optional[Session]:
        try:
            raw = self.redis.get(self._session_key())
        except RedisError as e:
            logger.error("[SESSION] restore failed sid=%s error=%s", self.sid[:8], repr(e))
            return None
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("[SESSION] corrupt persisted session dropped sid=%s error=%s", self.sid[:8], repr(e))
            self._clear_storage()
            return None

    def _write_user_mirror(self, session: Session, user: Optional[Dict[str, Any]]) -> None:
        metadata = session.user_metadata
        mirror = {
            "email": session.email,
            "name": metadata.get("full_name") or metadata.get("name") or session.email,
            "img_url": metadata.get("avatar_url") or metadata.get("picture"),
            "provider": session.provider,
            "created_at": (user or {}).get("created_at") or datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.redis.setex(self._mirror_key(), self.settings.session_ttl_s, json.dumps(mirror))
        except RedisError as e:
            logger.error("[SESSION] user mirror write failed sid=%s error=%s", self.sid[:8], repr(e))

    def get_user_data(self) -> Optional[Dict[str, Any]]:
        """Locally mirrored user attributes, or None when signed out."""
        try:
            raw = self.redis.get(self._mirror_key())
        except RedisError as e:
            logger.error("[SESSION] user mirror read failed sid=%s error=%s", self.sid[:8], repr(e))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def _clear_storage(self) -> None:
        try:
            self.redis.delete(self._session_key(), self._mirror_key())
        except RedisError as e:
            logger.error("[SESSION] clear failed sid=%s error=%s", self.sid[:8], repr(e))

    def _apply_session(
        self,
        session: Optional[Session],
        event: AuthEvent,
        user: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._session = session
        self._generation += 1
        if session is None:
            self._clear_storage()
        else:
            self._persist(session)
            if event in (AuthEvent.SIGNED_IN, AuthEvent.PASSWORD_RECOVERY):
                self._write_user_mirror(session, user)

    async def _set_session(
        self,
        session: Optional[Session],
        event: AuthEvent,
        user: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._apply_session(session, event, user)
        await self._emit(event, session)

    async def _refresh(self, session: Session, emit: bool) -> Optional[Session]:
        """
        Refresh ``session``. Handlers are notified after the lock is released,
        so a handler may itself ask for an access token.
        """
        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if self._session is not None and self._session is not session and not self._session.is_expired():
                return self._session
            generation = self._generation
            if not session.refresh_token:
                result = AuthResult.failure("Session expired and cannot be refreshed.", code="no_refresh_token")
            else:
                result = await self.provider.refresh_session(session.refresh_token)

            if self._generation != generation:
                # Signed in or out while the refresh was in flight; that wins
                logger.info("[SESSION] refresh superseded sid=%s", self.sid[:8])
                return self._session

            refreshed = result.data.get("session") if result.ok else None
            if refreshed is None:
                logger.warning(
                    "[SESSION] refresh failed sid=%s error=%s",
                    self.sid[:8], result.error.message if result.error else "no session",
                )
                event = AuthEvent.SIGNED_OUT
            else:
                event = AuthEvent.TOKEN_REFRESHED
            self._apply_session(refreshed, event)

        if emit:
            await self._emit(event, refreshed)
        return refreshed

    # ═══════════════════════════════════════════════════════════════
    # INITIALIZATION
    # ═══════════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Restore the persisted session and announce it with INITIAL_SESSION."""
        if self._initialized:
            await self.wait_until_loaded()
            return
        self._initialized = True
        try:
            session = self._restore()
            if session is not None and session.is_expired():
                await self._refresh(session, emit=False)
            else:
                self._session = session
            await self._emit(AuthEvent.INITIAL_SESSION, self._session)
        finally:
            self._release_loading()

    # ═══════════════════════════════════════════════════════════════
    # AUTH OPERATIONS
    # ═══════════════════════════════════════════════════════════════

    async def _materialize(self, result: AuthResult) -> AuthResult:
        session = result.data.get("session") if result.ok else None
        if isinstance(session, Session):
            await self._set_session(session, AuthEvent.SIGNED_IN, user=result.data.get("user"))
        return result

    async def sign_in(self, email: str, password: str) -> AuthResult:
        with self._loading_scope():
            result = await self.provider.sign_in_with_password(email, password)
            return await self._materialize(result)

    async def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> AuthResult:
        """
        Sign up. When the account needs email confirmation the link returns to
        the callback route with a PKCE code, exchanged like an OAuth return.
        """
        verifier = generate_code_verifier()
        with self._loading_scope():
            result = await self.provider.sign_up(
                email,
                password,
                redirect_to=self.settings.callback_url,
                data=data,
                code_challenge=code_challenge_for(verifier),
            )
            if result.ok and result.data.get("session") is None:
                try:
                    self.pending_actions.save_pending_action(
                        self.sid,
                        provider="email",
                        return_path="/dashboard",
                        code_verifier=verifier,
                        action_type="signup",
                    )
                except RedisError as e:
                    logger.error("[SESSION] sign-up confirmation state not saved sid=%s error=%s", self.sid[:8], repr(e))
            return await self._materialize(result)

    async def sign_out(self) -> AuthResult:
        """Revoke remotely when possible; local state is cleared regardless."""
        session = self._session
        result = AuthResult(data={})
        if session is not None:
            result = await self.provider.sign_out(session.access_token)
        self.pending_actions.cancel_pending_action(self.sid)
        self._post_auth_path = None
        await self._set_session(None, AuthEvent.SIGNED_OUT)
        return result

    async def sign_in_with_oauth(self, provider_name: str, return_path: str = "/dashboard") -> AuthResult:
        """Build the provider authorize URL; the browser is sent there next."""
        verifier = generate_code_verifier()
        result = self.provider.authorize_url(
            provider_name,
            redirect_to=self.settings.callback_url,
            code_challenge=code_challenge_for(verifier),
        )
        if not result.ok:
            return result
        try:
            self.pending_actions.save_pending_action(
                self.sid, provider=provider_name, return_path=return_path, code_verifier=verifier,
            )
        except RedisError as e:
            return AuthResult.failure(f"Could not start sign-in: {e}", code="storage_error")
        logger.info("[SESSION] oauth started sid=%s provider=%s", self.sid[:8], provider_name)
        return result

    async def complete_oauth(self, auth_code: str) -> AuthResult:
        """Exchange the callback ``code`` for a session (PKCE)."""
        with self._loading_scope():
            return await self._exchange_code(auth_code)

    def start_code_exchange(self, auth_code: str) -> "asyncio.Task[AuthResult]":
        """
        Run ``complete_oauth`` in the background.

        The loading flag is raised before this returns, so a reader that
        checks it right after scheduling already sees the exchange.
        """
        self._acquire_loading()

        async def run() -> AuthResult:
            try:
                return await self._exchange_code(auth_code)
            finally:
                self._release_loading()

        return asyncio.create_task(run())

    async def _exchange_code(self, auth_code: str) -> AuthResult:
        action = self.pending_actions.complete_pending_action(self.sid)
        if not action or not action.get("code_verifier"):
            return AuthResult.failure(
                "No sign-in is in progress for this browser session.",
                status=400,
                code="flow_state_not_found",
            )

        result = await self.provider.exchange_code_for_session(auth_code, action["code_verifier"])
        session = result.data.get("session") if result.ok else None
        if not isinstance(session, Session):
            logger.warning(
                "[SESSION] code exchange failed sid=%s error=%s",
                self.sid[:8], result.error.message if result.error else "no session",
            )
            return result

        self._post_auth_path = action.get("return_path")
        event = AuthEvent.PASSWORD_RECOVERY if action.get("action_type") == "recovery" else AuthEvent.SIGNED_IN
        await self._set_session(session, event, user=result.data.get("user"))
        return result

    async def reset_password_for_email(self, email: str) -> AuthResult:
        verifier = generate_code_verifier()
        result = await self.provider.reset_password_for_email(
            email,
            redirect_to=self.settings.callback_url,
            code_challenge=code_challenge_for(verifier),
        )
        if result.ok:
            try:
                self.pending_actions.save_pending_action(
                    self.sid,
                    provider="email",
                    return_path="/student-profile",
                    code_verifier=verifier,
                    action_type="recovery",
                )
            except RedisError as e:
                logger.error("[SESSION] recovery state not saved sid=%s error=%s", self.sid[:8], repr(e))
        return result

    async def sign_in_with_otp(self, email: str) -> AuthResult:
        """Send a one-time code to an existing account."""
        return await self.provider.sign_in_with_otp(email, should_create_user=False)

    async def verify_otp(self, email: str, token: str) -> AuthResult:
        with self._loading_scope():
            result = await self.provider.verify_otp(email, token, otp_type="email")
            return await self._materialize(result)

    async def update_password(self, password: str) -> AuthResult:
        token = await self.get_access_token()
        if not token:
            return AuthResult.failure("You must be signed in to change your password.", status=401, code="not_authenticated")
        result = await self.provider.update_user(token, {"password": password})
        if result.ok:
            await self._emit(AuthEvent.USER_UPDATED, self._session)
        return result
