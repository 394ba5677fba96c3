"""
Endpoint Failure Policies
=========================

One table decides what happens when a backend call fails:

    propagate  state-changing or identity-critical calls; the error reaches
               the caller, who must handle it
    fallback   read-only, best-effort, aggregable data; a statically shaped
               empty payload is returned instead

``not_found_as_none`` lets a propagating lookup report a 404 as ``None``
(profile lookup, where "not found" is a normal outcome).

Fallback payloads are copied on every use so callers may mutate them.
"""

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

PROPAGATE = "propagate"
FALLBACK = "fallback"

EMPTY_PAGINATION = {"page": 1, "limit": 20, "totalPages": 1, "totalDocuments": 0}

ASSESSMENT_ERROR_TEXT = "Could not generate recommendations due to an error."


@dataclass(frozen=True)
class EndpointPolicy:
    mode: str = PROPAGATE
    # Static shape, or a callable receiving the error for shapes that echo it
    fallback: Union[Any, Callable[[Exception], Any]] = None
    not_found_as_none: bool = False

    @property
    def is_fallback(self) -> bool:
        return self.mode == FALLBACK

    def fallback_value(self, error: Optional[Exception] = None) -> Any:
        if callable(self.fallback):
            return self.fallback(error)
        return copy.deepcopy(self.fallback)


def _propagate(not_found_as_none: bool = False) -> EndpointPolicy:
    return EndpointPolicy(mode=PROPAGATE, not_found_as_none=not_found_as_none)


def _fallback(shape: Any) -> EndpointPolicy:
    return EndpointPolicy(mode=FALLBACK, fallback=shape)


def _rag_health_fallback(error: Optional[Exception]) -> Dict[str, Any]:
    return {"status": "unhealthy", "error": str(error) if error else "unknown error"}


ENDPOINT_POLICIES: Dict[str, EndpointPolicy] = {
    # Profile
    "profile.get": _propagate(not_found_as_none=True),
    "profile.create": _propagate(),
    "profile.update": _propagate(),
    "profile.save": _propagate(),
    "profile.delete": _propagate(),
    "profile.assess": _fallback({"assessmentText": ASSESSMENT_ERROR_TEXT}),
    # User stats & applications
    "user.stats": _fallback({"activeApps": 0, "potentialAid": 0}),
    "user.applications": _fallback({"applications": []}),
    "user.track_application": _propagate(),
    "user.saved_scholarships": _fallback({"scholarships": []}),
    "user.save_scholarship": _propagate(),
    "user.remove_scholarship": _propagate(),
    # Institutions
    "institutions.search": _fallback({"data": [], "pagination": EMPTY_PAGINATION}),
    "institutions.details": _fallback(None),
    "institutions.batch": _fallback([]),
    # Probability
    "probability.calculate": _fallback({"results": []}),
    "probability.stats": _fallback(None),
    "probability.compare": _fallback({"comparisons": []}),
    "probability.trends": _fallback(None),
    # RAG
    "rag.query": _propagate(),
    "rag.top_matches": _fallback({"data": []}),
    "rag.scholarships": _fallback({"data": []}),
    "rag.health": _fallback(_rag_health_fallback),
    # Scholarships
    "scholarships.search": _propagate(),
    "scholarships.by_profile": _propagate(),
    "scholarships.recommendations": _propagate(),
    "scholarships.stats": _fallback({"totalEligible": 0}),
    "scholarships.text": _propagate(),
    "scholarships.category": _propagate(),
    "scholarships.categories": _propagate(),
    "scholarships.deadlines": _fallback({"deadlines": []}),
    "scholarships.match": _propagate(),
    "scholarships.by_id": _propagate(),
    "matching.scholarships": _propagate(),
    # Dashboard
    "dashboard.next_steps": _fallback({"nextSteps": []}),
}

DEFAULT_POLICY = _propagate()


def get_policy(name: str) -> EndpointPolicy:
    """Policy for ``name``; unknown calls propagate."""
    return ENDPOINT_POLICIES.get(name, DEFAULT_POLICY)
