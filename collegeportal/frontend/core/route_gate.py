"""
Route Gate
==========

Pure state machine deciding which view a request may reach.

States (derived from the session and profile completeness only):

    LOADING                   session not resolved yet; nothing is reachable
    UNAUTHENTICATED           login, auth callback
    AUTHENTICATED_INCOMPLETE  student profile, auth callback
    AUTHENTICATED_COMPLETE    every view except login

A request for a view outside the permitted set, or for an unknown path, is
redirected to the state's default view (login / student profile / dashboard).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class RouteState(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED_INCOMPLETE = "authenticated_incomplete"
    AUTHENTICATED_COMPLETE = "authenticated_complete"


class View(str, Enum):
    LOGIN = "/login"
    AUTH_CALLBACK = "/auth/callback"
    STUDENT_PROFILE = "/student-profile"
    DASHBOARD = "/dashboard"
    MATCHING = "/matching"
    SCHOLARSHIPS = "/scholarships"
    FORECASTER = "/forecaster"
    COMPARE = "/compare"
    STUDENTVUE = "/studentvue"
    COLLEGE_PROFILE = "/profile"
    REPORT = "/report"

    @property
    def path(self) -> str:
        return self.value


PERMITTED_VIEWS: Dict[RouteState, FrozenSet[View]] = {
    RouteState.LOADING: frozenset(),
    RouteState.UNAUTHENTICATED: frozenset({View.LOGIN, View.AUTH_CALLBACK}),
    RouteState.AUTHENTICATED_INCOMPLETE: frozenset({View.STUDENT_PROFILE, View.AUTH_CALLBACK}),
    RouteState.AUTHENTICATED_COMPLETE: frozenset(v for v in View if v is not View.LOGIN),
}

DEFAULT_VIEWS: Dict[RouteState, Optional[View]] = {
    RouteState.LOADING: None,
    RouteState.UNAUTHENTICATED: View.LOGIN,
    RouteState.AUTHENTICATED_INCOMPLETE: View.STUDENT_PROFILE,
    RouteState.AUTHENTICATED_COMPLETE: View.DASHBOARD,
}


@dataclass(frozen=True)
class RouteDecision:
    state: RouteState
    # None while loading
    view: Optional[View]
    redirect_to: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.view is not None and self.redirect_to is None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "state": self.state.value,
            "view": self.view.path if self.view else None,
            "redirectTo": self.redirect_to,
            "loading": self.state is RouteState.LOADING,
        }


def route_state(loading: bool, session_present: bool, profile_complete: bool) -> RouteState:
    if loading:
        return RouteState.LOADING
    if not session_present:
        return RouteState.UNAUTHENTICATED
    if not profile_complete:
        return RouteState.AUTHENTICATED_INCOMPLETE
    return RouteState.AUTHENTICATED_COMPLETE


def view_for_path(path: Optional[str]) -> Optional[View]:
    """Match ``path`` (and its sub-paths, e.g. ``/profile/123``) to a view."""
    if not path:
        return None
    path = path.split("?", 1)[0].split("#", 1)[0]
    if len(path) > 1:
        path = path.rstrip("/")
    for view in View:
        if path == view.path or path.startswith(view.path + "/"):
            return view
    return None


def resolve_route(
    path: Optional[str],
    loading: bool,
    session_present: bool,
    profile_complete: bool,
) -> RouteDecision:
    state = route_state(loading, session_present, profile_complete)
    if state is RouteState.LOADING:
        return RouteDecision(state=state, view=None)

    requested = view_for_path(path)
    if requested is not None and requested in PERMITTED_VIEWS[state]:
        return RouteDecision(state=state, view=requested)

    default = DEFAULT_VIEWS[state]
    return RouteDecision(state=state, view=default, redirect_to=default.path)


def default_view(state: RouteState) -> Optional[View]:
    return DEFAULT_VIEWS[state]
