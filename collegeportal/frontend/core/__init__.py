"""
Frontend Core - Shared Utilities
================================

Usage:
    from collegeportal.frontend.core import get_portal_registry, resolve_route
"""

from .auth_callback import CallbackOutcome, CallbackStatus, handle_auth_callback
from .portal_session import PortalSession, PortalSessionRegistry, get_portal_registry
from .profile_reconciler import ProfileReconciler, ProfileState, is_profile_complete
from .route_gate import RouteDecision, RouteState, View, resolve_route

__all__ = [
    "CallbackOutcome",
    "CallbackStatus",
    "handle_auth_callback",
    "PortalSession",
    "PortalSessionRegistry",
    "get_portal_registry",
    "ProfileReconciler",
    "ProfileState",
    "is_profile_complete",
    "RouteDecision",
    "RouteState",
    "View",
    "resolve_route",
]
