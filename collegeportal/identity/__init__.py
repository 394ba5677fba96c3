"""
Identity - Supabase sessions for the portal.
"""

from .models import AuthError, AuthEvent, AuthResult, Session
from .pending_action_manager import PendingActionManager
from .provider import (
    DisabledIdentityProvider,
    IdentityProvider,
    SupabaseIdentityProvider,
    get_identity_provider,
)
from .session_store import SessionStore

__all__ = [
    "AuthError",
    "AuthEvent",
    "AuthResult",
    "Session",
    "PendingActionManager",
    "IdentityProvider",
    "SupabaseIdentityProvider",
    "DisabledIdentityProvider",
    "get_identity_provider",
    "SessionStore",
]
