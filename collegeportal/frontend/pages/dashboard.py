"""
Dashboard Page
==============

Aggregates the dashboard in one server-side pass instead of five browser
round-trips.

Architecture:
    GET /dashboard → DashboardLoader.load(profile, session)
        asyncio.gather(                         (independent, per-branch timeout)
            collegeMatches      POST /rag/top-matches
            scholarshipStats    GET  /scholarships/stats
            scholarshipSummary  POST /rag/scholarships
            deadlines           GET  /scholarships/deadlines?days=30
            userStats           GET  /user/stats/{user_id}
        )
        → nextSteps            POST /dashboard/next-steps (uses the above)

Each branch has its own error boundary: a failing branch gets its policy's
fallback shape and one entry in ``errors``; the others are unaffected. The
``errors`` map holds exactly the keys of the branches that failed.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from ...backend.api_client import ApiError, BackendApiClient
from ...backend.policies import get_policy
from ...identity.models import Session
from ..core.profile_reconciler import profile_completeness_percent

logger = logging.getLogger("portal.dashboard")

DEADLINE_WINDOW_DAYS = 30
MAX_MATCHES = 3
MAX_DEADLINES = 2
MAX_NEXT_STEPS = 4
DEFAULT_BASE_COST = 50000

FAFSA_URL = "https://fafsa.gov"
SAT_URL = "https://collegereadiness.collegeboard.org/sat"

BRANCH_POLICIES = {
    "collegeMatches": "rag.top_matches",
    "scholarshipStats": "scholarships.stats",
    "scholarshipSummary": "rag.scholarships",
    "deadlines": "scholarships.deadlines",
    "userStats": "user.stats",
    "nextSteps": "dashboard.next_steps",
}

ERROR_MESSAGES = {
    "collegeMatches": "Failed to load college matches",
    "scholarshipStats": "Failed to load scholarship statistics",
    "scholarshipSummary": "Failed to load scholarship summary",
    "deadlines": "Failed to load upcoming deadlines",
    "userStats": "Failed to load user statistics",
    "nextSteps": "Failed to load next steps",
}


# ═══════════════════════════════════════════════════════════════
# PRESENTATION HELPERS
# ═══════════════════════════════════════════════════════════════

def greeting_for_hour(hour: int) -> str:
    if hour < 12:
        return "Good morning"
    if hour < 17:
        return "Good afternoon"
    return "Good evening"


def confidence_level(completeness_percent: int) -> str:
    if completeness_percent >= 80:
        return "On Track"
    if completeness_percent >= 60:
        return "Getting There"
    return "Needs Action"


def likelihood_from_probability(probability: Optional[float]) -> str:
    probability = probability or 0
    if probability >= 0.7:
        return "Safety"
    if probability >= 0.4:
        return "Match"
    return "Reach"


async def admission_likelihood(api: BackendApiClient, profile: Optional[Dict[str, Any]], college: Dict[str, Any]) -> str:
    """Safety / Match / Reach for one college; Unknown when it cannot be computed."""
    unit_id = college.get("unitid")
    if not profile or not unit_id:
        return "Unknown"
    try:
        probabilities = await api.calculate_probabilities(profile, [unit_id], use_fallback=False)
    except ApiError as e:
        logger.warning("[DASHBOARD] likelihood failed unit_id=%s error=%s", unit_id, repr(e))
        return "Unknown"
    results = (probabilities or {}).get("results") or []
    return likelihood_from_probability(results[0].get("probability") if results else 0)


def estimated_net_cost(college: Dict[str, Any], scholarship_stats: Optional[Dict[str, Any]]) -> int:
    cost_and_aid = college.get("cost_and_aid") or {}
    base_cost = cost_and_aid.get("tuition_in_state") or cost_and_aid.get("tuition_out_of_state") or DEFAULT_BASE_COST
    scholarships = (scholarship_stats or {}).get("totalEligible") or 0
    return max(0, base_cost - scholarships)


def next_step_target(text: str) -> Dict[str, str]:
    """Where a next-step item leads: an in-app route or an external URL."""
    lower = text.lower()
    if "profile" in lower or "complete" in lower:
        return {"route": "/student-profile"}
    if "college" in lower or "match" in lower:
        return {"route": "/matching"}
    if "scholarship" in lower or "apply" in lower:
        return {"route": "/scholarships"}
    if "fafsa" in lower:
        return {"url": FAFSA_URL}
    if "sat" in lower or "test" in lower:
        return {"url": SAT_URL}
    if "career" in lower or "forecast" in lower:
        return {"route": "/forecaster"}
    return {"route": "/student-profile"}


def _step(text: str, priority: str, due_date: str, target: Dict[str, str]) -> Dict[str, Any]:
    return {"text": text, "priority": priority, "dueDate": due_date, "completed": False, **target}


def fallback_next_steps(
    profile: Optional[Dict[str, Any]],
    college_matches: List[Dict[str, Any]],
    deadlines: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    steps = []
    if profile_completeness_percent(profile) < 100:
        steps.append(_step("Complete your student profile", "high", "ASAP", {"route": "/student-profile"}))
    if not college_matches:
        steps.append(_step("Find college matches", "high", "Jan 15", {"route": "/matching"}))
    if deadlines:
        steps.append(_step(
            f"Apply to {len(deadlines)} scholarships with upcoming deadlines", "medium", "ASAP",
            {"route": "/scholarships"},
        ))
    steps.append(_step("Complete FAFSA", "medium", "Dec 1", {"url": FAFSA_URL}))
    sat_score = (profile or {}).get("satScore")
    if not sat_score or sat_score == "N/A":
        steps.append(_step("Take SAT", "medium", "March", {"url": SAT_URL}))
    return steps[:MAX_NEXT_STEPS]


def build_next_steps(
    next_steps_data: Optional[Dict[str, Any]],
    profile: Optional[Dict[str, Any]],
    college_matches: List[Dict[str, Any]],
    deadlines: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    backend_steps = (next_steps_data or {}).get("nextSteps") or []
    if backend_steps:
        return [
            _step(
                text,
                "high" if index == 0 else "medium",
                "ASAP" if index == 0 else "This week",
                next_step_target(text),
            )
            for index, text in enumerate(backend_steps[:MAX_NEXT_STEPS])
        ]
    return fallback_next_steps(profile, college_matches, deadlines)


# ═══════════════════════════════════════════════════════════════
# LOADER
# ═══════════════════════════════════════════════════════════════

class DashboardLoader:

    def __init__(self, api: BackendApiClient, branch_timeout: Optional[float] = None):
        self.api = api
        self.branch_timeout = branch_timeout

    async def _bounded(self, coro: Awaitable[Any]) -> Any:
        if self.branch_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, self.branch_timeout)

    def _safe_result(self, key: str, result: Any, errors: Dict[str, str]) -> Any:
        """Branch value, or its fallback shape with ``key`` recorded in ``errors``."""
        if isinstance(result, BaseException):
            logger.warning("[DASHBOARD] branch failed key=%s error=%s", key, repr(result))
            errors[key] = ERROR_MESSAGES[key]
            return get_policy(BRANCH_POLICIES[key]).fallback_value(result if isinstance(result, Exception) else None)
        if result is None:
            return get_policy(BRANCH_POLICIES[key]).fallback_value()
        return result

    async def _gather_independent(
        self,
        profile: Optional[Dict[str, Any]],
        user_id: Optional[str],
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        keys = ["collegeMatches", "scholarshipStats", "scholarshipSummary", "deadlines"]
        coros = [
            self._bounded(self.api.get_top_matches(profile, use_fallback=False)),
            self._bounded(self.api.get_scholarship_stats(profile, use_fallback=False)),
            self._bounded(self.api.get_scholarship_summary(profile, use_fallback=False)),
            self._bounded(self.api.get_upcoming_deadlines(DEADLINE_WINDOW_DAYS, use_fallback=False)),
        ]
        if user_id:
            keys.append("userStats")
            coros.append(self._bounded(self.api.get_user_stats(user_id, use_fallback=False)))

        results = await asyncio.gather(*coros, return_exceptions=True)

        errors: Dict[str, str] = {}
        data = {key: self._safe_result(key, result, errors) for key, result in zip(keys, results)}
        data.setdefault("userStats", get_policy(BRANCH_POLICIES["userStats"]).fallback_value())
        return data, errors

    async def load(
        self,
        profile: Optional[Dict[str, Any]],
        session: Optional[Session],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        start_time = datetime.utcnow()
        user_id = session.user_id if session else (profile or {}).get("userId")

        data, errors = await self._gather_independent(profile, user_id)

        college_matches = ((data["collegeMatches"] or {}).get("results") or [])[:MAX_MATCHES]
        deadlines = ((data["deadlines"] or {}).get("deadlines") or [])[:MAX_DEADLINES]

        try:
            next_steps_data = await self._bounded(self.api.get_next_steps(
                profile,
                college_matches,
                deadlines,
                {"summary": data["scholarshipSummary"], "userStats": data["userStats"]},
                use_fallback=False,
            ))
        except (ApiError, asyncio.TimeoutError) as e:
            next_steps_data = self._safe_result("nextSteps", e, errors)

        completeness = profile_completeness_percent(profile)
        now = now or datetime.now()
        elapsed_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)

        logger.info(
            "[DASHBOARD] loaded request_id=%s user=%s errors=%s duration_ms=%s",
            request_id, user_id, sorted(errors), elapsed_ms,
        )

        return {
            "greeting": greeting_for_hour(now.hour),
            "displayName": (profile or {}).get("fullName") or (profile or {}).get("first_name") or "Student",
            "profileCompleteness": completeness,
            "confidence": confidence_level(completeness),
            "collegeMatches": [
                {**college, "estimatedNetCost": estimated_net_cost(college, data["scholarshipStats"])}
                for college in college_matches
            ],
            "scholarshipStats": data["scholarshipStats"],
            "scholarshipSummary": data["scholarshipSummary"],
            "deadlines": deadlines,
            "userStats": data["userStats"],
            "nextSteps": build_next_steps(next_steps_data, profile, college_matches, deadlines),
            "errors": errors,
            "meta": {"requestId": request_id, "durationMs": elapsed_ms},
        }
