"""
WebSocket Event Constants
=========================

Event types pushed to the browser over ``/ws``. The page listens for these to
re-render when the session, the profile or the reachable view set changes.

Usage:
    from collegeportal.ws_events import WS_EVENTS

    await hub.broadcast(sid, {
        "type": WS_EVENTS.ROUTE.CHANGED,
        "payload": {...}
    })

Naming convention:
- Prefix by domain (AUTH, PROFILE, ROUTE, DASHBOARD, CONNECTION)
- Suffix by action (CHANGED, UPDATED, ERROR, LOADED, ...)
"""


# ============================================
# AUTH Events
# ============================================
class AuthEvents:
    """Authentication events."""
    SESSION_CHANGED = "auth.session_changed"
    SIGNED_IN = "auth.signed_in"
    SIGNED_OUT = "auth.signed_out"
    TOKEN_REFRESHED = "auth.token_refreshed"


# ============================================
# Profile Events
# ============================================
class ProfileEvents:
    """Student profile events."""
    RECONCILED = "profile.reconciled"
    UPDATED = "profile.updated"
    ERROR = "profile.error"


# ============================================
# Route Events
# ============================================
class RouteEvents:
    """Route gate events."""
    CHANGED = "route.changed"


# ============================================
# Dashboard Events
# ============================================
class DashboardEvents:
    """Dashboard events."""
    LOADED = "dashboard.loaded"
    PARTIAL_ERROR = "dashboard.partial_error"


# ============================================
# Connection Events
# ============================================
class ConnectionEvents:
    """WebSocket connection events."""
    READY = "connection.ready"
    PING = "connection.ping"
    PONG = "connection.pong"


class WS_EVENTS:
    AUTH = AuthEvents
    PROFILE = ProfileEvents
    ROUTE = RouteEvents
    DASHBOARD = DashboardEvents
    CONNECTION = ConnectionEvents


__all__ = [
    "WS_EVENTS",
    "AuthEvents",
    "ProfileEvents",
    "RouteEvents",
    "DashboardEvents",
    "ConnectionEvents",
]
