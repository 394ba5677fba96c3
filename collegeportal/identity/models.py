"""
Identity data types shared by the provider, the session store and the
HTTP layer.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class AuthEvent(str, Enum):
    """Auth state change events, named after the provider SDK's events."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of an identity-provider session."""

    user_id: str
    email: Optional[str]
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    provider: str = "email"
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> Optional["Session"]:
        """Build a session from a GoTrue token response, or None if it holds none."""
        access_token = payload.get("access_token")
        user = payload.get("user") or {}
        if not access_token or not user.get("id"):
            return None

        expires_at = payload.get("expires_at")
        if expires_at is None and payload.get("expires_in"):
            expires_at = int(time.time()) + int(payload["expires_in"])

        app_metadata = user.get("app_metadata") or {}
        return cls(
            user_id=user["id"],
            email=user.get("email"),
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            provider=app_metadata.get("provider") or "email",
            user_metadata=dict(user.get("user_metadata") or {}),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=data["user_id"],
            email=data.get("email"),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            provider=data.get("provider") or "email",
            user_metadata=dict(data.get("user_metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_expired(self, leeway: int = 30) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - leeway <= int(time.time())

    @property
    def display_name(self) -> Optional[str]:
        return self.user_metadata.get("full_name") or self.email

    @property
    def avatar_url(self) -> Optional[str]:
        return self.user_metadata.get("avatar_url")

    def public_view(self) -> Dict[str, Any]:
        """Session fields safe to hand to the browser (no tokens)."""
        return {
            "userId": self.user_id,
            "email": self.email,
            "provider": self.provider,
            "name": self.display_name,
            "avatarUrl": self.avatar_url,
            "expiresAt": self.expires_at,
        }


@dataclass
class AuthError:
    message: str
    status: Optional[int] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "status": self.status, "code": self.code}


@dataclass
class AuthResult:
    """``{data, error}`` pair returned by every identity operation."""

    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, message: str, status: Optional[int] = None, code: Optional[str] = None) -> "AuthResult":
        return cls(data={}, error=AuthError(message=message, status=status, code=code))

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.data)
        session = data.get("session")
        if isinstance(session, Session):
            data["session"] = session.public_view()
        return {"data": data, "error": self.error.to_dict() if self.error else None}
