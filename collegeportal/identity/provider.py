"""
Identity Provider Clients
=========================

The portal never implements authentication itself: it talks to a Supabase
Auth (GoTrue) project over its REST contract. Two implementations share the
``IdentityProvider`` interface and one is selected once at startup:

    - SupabaseIdentityProvider: the real client (httpx)
    - DisabledIdentityProvider: used when SUPABASE_URL / SUPABASE_ANON_KEY
      are missing. Every operation answers with an ``auth_not_configured``
      error so the rest of the service keeps working.

Every operation returns an ``AuthResult``; provider and network failures are
reported in ``AuthResult.error`` and never raised to the caller.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx
from authlib.common.urls import add_params_to_uri

from ..config import get_settings
from .models import AuthError, AuthResult, Session

logger = logging.getLogger("portal.identity")

NOT_CONFIGURED_MESSAGE = "Authentication is not configured for this deployment."


class IdentityProvider(ABC):
    """Operations the portal needs from the identity provider."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthResult: ...

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        redirect_to: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult: ...

    @abstractmethod
    async def sign_out(self, access_token: str) -> AuthResult: ...

    @abstractmethod
    def authorize_url(
        self,
        provider: str,
        redirect_to: str,
        code_challenge: str,
        scopes: Optional[str] = None,
    ) -> AuthResult: ...

    @abstractmethod
    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> AuthResult: ...

    @abstractmethod
    async def refresh_session(self, refresh_token: str) -> AuthResult: ...

    @abstractmethod
    async def reset_password_for_email(
        self,
        email: str,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult: ...

    @abstractmethod
    async def sign_in_with_otp(self, email: str, should_create_user: bool = False) -> AuthResult: ...

    @abstractmethod
    async def verify_otp(self, email: str, token: str, otp_type: str = "email") -> AuthResult: ...

    @abstractmethod
    async def update_user(self, access_token: str, attributes: Dict[str, Any]) -> AuthResult: ...

    async def aclose(self) -> None:
        return None

    @property
    def enabled(self) -> bool:
        return True


class SupabaseIdentityProvider(IdentityProvider):
    """
    Supabase Auth REST client.

    Usage:
        provider = SupabaseIdentityProvider(url, anon_key)
        result = await provider.sign_in_with_password("a@b.c", "secret")
        if result.ok:
            session = result.data["session"]
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.auth_url = f"{self.url}/auth/v1"
        self.anon_key = anon_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.auth_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _error_from_response(response: httpx.Response) -> AuthError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = (
            body.get("msg")
            or body.get("error_description")
            or body.get("message")
            or body.get("error")
            or f"Auth request failed with status {response.status_code}"
        )
        code = body.get("error_code") or body.get("code") or body.get("error")
        return AuthError(message=str(message), status=response.status_code, code=str(code) if code else None)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[AuthError]]:
        try:
            response = await self.client.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._headers(access_token),
            )
        except httpx.TimeoutException:
            logger.error("[IDENTITY] timeout method=%s path=%s", method, path)
            return None, AuthError(message="The authentication service timed out.", code="timeout")
        except httpx.HTTPError as e:
            logger.error("[IDENTITY] network error method=%s path=%s error=%s", method, path, repr(e))
            return None, AuthError(message=f"Could not reach the authentication service: {e}", code="network_error")

        if response.status_code >= 400:
            error = self._error_from_response(response)
            logger.warning(
                "[IDENTITY] request failed method=%s path=%s status=%s code=%s",
                method, path, response.status_code, error.code,
            )
            return None, error

        if not response.content:
            return {}, None
        try:
            body = response.json()
        except ValueError:
            return {}, None
        return body if isinstance(body, dict) else {"items": body}, None

    @staticmethod
    def _session_result(body: Dict[str, Any]) -> AuthResult:
        session = Session.from_token_response(body)
        user = body.get("user")
        if user is None and body.get("id"):
            # Sign-up with email confirmation answers with the bare user
            user = body
        return AuthResult(data={"user": user, "session": session})

    # ═══════════════════════════════════════════════════════════════
    # PASSWORD / SIGN UP / SIGN OUT
    # ═══════════════════════════════════════════════════════════════

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        body, error = await self._request(
            "POST", "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if error:
            return AuthResult(error=error)
        return self._session_result(body)

    async def sign_up(
        self,
        email: str,
        password: str,
        redirect_to: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult:
        params = {"redirect_to": redirect_to} if redirect_to else None
        payload: Dict[str, Any] = {"email": email, "password": password, "data": data or {}}
        if code_challenge:
            # The confirmation link then carries ?code= for the PKCE exchange
            payload["code_challenge"] = code_challenge
            payload["code_challenge_method"] = "s256"
        body, error = await self._request("POST", "/signup", params=params, json=payload)
        if error:
            return AuthResult(error=error)
        return self._session_result(body)

    async def sign_out(self, access_token: str) -> AuthResult:
        _, error = await self._request("POST", "/logout", access_token=access_token)
        # An already expired token still ends the local session
        if error and error.status not in (401, 403, 404):
            return AuthResult(error=error)
        return AuthResult(data={})

    # ═══════════════════════════════════════════════════════════════
    # OAUTH (PKCE)
    # ═══════════════════════════════════════════════════════════════

    def authorize_url(
        self,
        provider: str,
        redirect_to: str,
        code_challenge: str,
        scopes: Optional[str] = None,
    ) -> AuthResult:
        params = {
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge,
            "code_challenge_method": "s256",
        }
        if scopes:
            params["scopes"] = scopes
        return AuthResult(data={"provider": provider, "url": add_params_to_uri(f"{self.auth_url}/authorize", params)})

    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> AuthResult:
        body, error = await self._request(
            "POST", "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
        )
        if error:
            return AuthResult(error=error)
        return self._session_result(body)

    async def refresh_session(self, refresh_token: str) -> AuthResult:
        body, error = await self._request(
            "POST", "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if error:
            return AuthResult(error=error)
        return self._session_result(body)

    # ═══════════════════════════════════════════════════════════════
    # PASSWORD RESET / OTP / USER UPDATE
    # ═══════════════════════════════════════════════════════════════

    async def reset_password_for_email(
        self,
        email: str,
        redirect_to: Optional[str] = None,
        code_challenge: Optional[str] = None,
    ) -> AuthResult:
        params = {"redirect_to": redirect_to} if redirect_to else None
        body: Dict[str, Any] = {"email": email}
        if code_challenge:
            body["code_challenge"] = code_challenge
            body["code_challenge_method"] = "s256"
        _, error = await self._request("POST", "/recover", params=params, json=body)
        if error:
            return AuthResult(error=error)
        return AuthResult(data={})

    async def sign_in_with_otp(self, email: str, should_create_user: bool = False) -> AuthResult:
        _, error = await self._request(
            "POST", "/otp",
            json={"email": email, "create_user": should_create_user},
        )
        if error:
            return AuthResult(error=error)
        return AuthResult(data={"user": None, "session": None})

    async def verify_otp(self, email: str, token: str, otp_type: str = "email") -> AuthResult:
        body, error = await self._request(
            "POST", "/verify",
            json={"email": email, "token": token, "type": otp_type},
        )
        if error:
            return AuthResult(error=error)
        return self._session_result(body)

    async def update_user(self, access_token: str, attributes: Dict[str, Any]) -> AuthResult:
        body, error = await self._request("PUT", "/user", json=attributes, access_token=access_token)
        if error:
            return AuthResult(error=error)
        return AuthResult(data={"user": body})


class DisabledIdentityProvider(IdentityProvider):
    """Stand-in used when the identity provider is not configured."""

    @staticmethod
    def _not_configured() -> AuthResult:
        return AuthResult.failure(NOT_CONFIGURED_MESSAGE, status=503, code="auth_not_configured")

    @property
    def enabled(self) -> bool:
        return False

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        return self._not_configured()

    async def sign_up(self, email, password, redirect_to=None, data=None, code_challenge=None) -> AuthResult:
        return self._not_configured()

    async def sign_out(self, access_token: str) -> AuthResult:
        # Nothing to revoke remotely; the local session is still cleared
        return AuthResult(data={})

    def authorize_url(self, provider, redirect_to, code_challenge, scopes=None) -> AuthResult:
        return self._not_configured()

    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> AuthResult:
        return self._not_configured()

    async def refresh_session(self, refresh_token: str) -> AuthResult:
        return self._not_configured()

    async def reset_password_for_email(self, email, redirect_to=None, code_challenge=None) -> AuthResult:
        return self._not_configured()

    async def sign_in_with_otp(self, email, should_create_user=False) -> AuthResult:
        return self._not_configured()

    async def verify_otp(self, email, token, otp_type="email") -> AuthResult:
        return self._not_configured()

    async def update_user(self, access_token, attributes) -> AuthResult:
        return self._not_configured()


# =============================================================================
# SINGLETON
# =============================================================================

_identity_provider: Optional[IdentityProvider] = None


def build_identity_provider(settings=None) -> IdentityProvider:
    settings = settings or get_settings()
    if settings.auth_configured:
        logger.info("[IDENTITY] provider=supabase url=%s", settings.supabase_url)
        return SupabaseIdentityProvider(
            settings.supabase_url,
            settings.supabase_anon_key,
            timeout=settings.auth_timeout_s,
        )
    logger.warning("[IDENTITY] provider=disabled reason=missing_config")
    return DisabledIdentityProvider()


def get_identity_provider() -> IdentityProvider:
    """Get the identity provider selected for this process."""
    global _identity_provider
    if _identity_provider is None:
        _identity_provider = build_identity_provider()
    return _identity_provider
