"""
Unit tests for the dashboard aggregation.

Run with:
    pytest tests/test_dashboard.py -v
"""

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from collegeportal.backend.api_client import ApiError
from collegeportal.frontend.pages.dashboard import (
    DashboardLoader,
    admission_likelihood,
    confidence_level,
    estimated_net_cost,
    fallback_next_steps,
    greeting_for_hour,
    likelihood_from_probability,
    next_step_target,
)

from .conftest import make_backend_client, make_session

PROFILE = {"userId": "user-1", "fullName": "Ada Student", "gpa": 3.8, "satScore": 1450, "gradeLevel": "12"}

COLLEGES = [
    {"unitid": str(100000 + i), "name": f"College {i}", "cost_and_aid": {"tuition_in_state": 30000}}
    for i in range(5)
]

DEADLINES = [{"name": f"Scholarship {i}", "deadline": "2026-11-30"} for i in range(4)]


def _backend(failing=(), next_steps=("Complete your profile essay", "Apply to 2 scholarships")):
    """MockTransport handler serving every dashboard endpoint; ``failing`` paths answer 500."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path.replace("/api", "", 1)
        calls.append(path)
        if path in failing:
            return httpx.Response(500, json={"error": f"{path} unavailable"})
        if path == "/rag/top-matches":
            return httpx.Response(200, json={"results": COLLEGES})
        if path == "/scholarships/stats":
            return httpx.Response(200, json={"totalEligible": 12000})
        if path == "/rag/scholarships":
            return httpx.Response(200, json={"data": [{"summary": "12 matches"}]})
        if path == "/scholarships/deadlines":
            return httpx.Response(200, json={"deadlines": DEADLINES})
        if path == "/user/stats/user-1":
            return httpx.Response(200, json={"activeApps": 2, "potentialAid": 5000})
        if path == "/dashboard/next-steps":
            calls.append(json.loads(request.content))
            return httpx.Response(200, json={"nextSteps": list(next_steps)})
        return httpx.Response(404, json={"error": "unknown"})

    return handler, calls


@pytest.mark.asyncio
async def test_full_dashboard_load():
    handler, calls = _backend()
    loader = DashboardLoader(make_backend_client(handler, token_getter=lambda: "token-1"))

    data = await loader.load(PROFILE, make_session(), now=datetime(2026, 10, 19, 9, 0))

    assert data["errors"] == {}
    assert data["greeting"] == "Good morning"
    assert data["displayName"] == "Ada Student"
    assert data["profileCompleteness"] == 60
    assert data["confidence"] == "Getting There"
    assert len(data["collegeMatches"]) == 3
    assert data["collegeMatches"][0]["estimatedNetCost"] == 18000
    assert len(data["deadlines"]) == 2
    assert data["userStats"] == {"activeApps": 2, "potentialAid": 5000}
    assert [step["route"] for step in data["nextSteps"]] == ["/student-profile", "/scholarships"]
    assert data["nextSteps"][0]["priority"] == "high"
    assert calls[-2] == "/dashboard/next-steps"
    assert len(calls[-1]["collegeMatches"]) == 3
    assert len(calls[-1]["deadlines"]) == 2


@pytest.mark.asyncio
async def test_failed_branches_are_isolated():
    handler, _ = _backend(failing=("/rag/top-matches", "/scholarships/stats"))
    loader = DashboardLoader(make_backend_client(handler, token_getter=lambda: "token-1"))

    data = await loader.load(PROFILE, make_session())

    assert set(data["errors"]) == {"collegeMatches", "scholarshipStats"}
    assert data["errors"]["collegeMatches"] == "Failed to load college matches"
    assert data["collegeMatches"] == []
    assert data["scholarshipStats"] == {"totalEligible": 0}
    assert data["scholarshipSummary"] == {"data": [{"summary": "12 matches"}]}
    assert len(data["deadlines"]) == 2
    assert data["userStats"]["activeApps"] == 2


@pytest.mark.asyncio
async def test_next_steps_failure_uses_local_steps():
    handler, _ = _backend(failing=("/dashboard/next-steps",))
    loader = DashboardLoader(make_backend_client(handler, token_getter=lambda: "token-1"))

    data = await loader.load({"userId": "user-1", "gpa": 3.8}, make_session())

    assert set(data["errors"]) == {"nextSteps"}
    texts = [step["text"] for step in data["nextSteps"]]
    assert texts[0] == "Complete your student profile"
    assert len(texts) <= 4


@pytest.mark.asyncio
async def test_user_stats_skipped_without_user():
    handler, calls = _backend()
    loader = DashboardLoader(make_backend_client(handler))

    data = await loader.load({"gpa": 3.8}, None)

    assert "/user/stats/user-1" not in calls
    assert data["userStats"] == {"activeApps": 0, "potentialAid": 0}
    assert data["displayName"] == "Student"


class _SlowApi:
    """Stub backend whose deadline branch never answers in time."""

    async def get_top_matches(self, profile, use_fallback=True):
        return {"results": []}

    async def get_scholarship_stats(self, profile, use_fallback=True):
        return {"totalEligible": 100}

    async def get_scholarship_summary(self, profile, use_fallback=True):
        return {"data": []}

    async def get_upcoming_deadlines(self, days=30, use_fallback=True):
        await asyncio.sleep(5)
        return {"deadlines": DEADLINES}

    async def get_user_stats(self, user_id, use_fallback=True):
        return {"activeApps": 1, "potentialAid": 0}

    async def get_next_steps(self, profile, college_matches, deadlines, context=None, use_fallback=True):
        raise ApiError("next steps offline", status=502)


@pytest.mark.asyncio
async def test_branch_timeout_only_affects_that_branch():
    loader = DashboardLoader(_SlowApi(), branch_timeout=0.05)

    data = await loader.load(PROFILE, make_session())

    assert set(data["errors"]) == {"deadlines", "nextSteps"}
    assert data["deadlines"] == []
    assert data["scholarshipStats"] == {"totalEligible": 100}


@pytest.mark.asyncio
async def test_admission_likelihood():
    def handler(request):
        return httpx.Response(200, json={"results": [{"probability": 0.55}]})

    api = make_backend_client(handler)

    assert await admission_likelihood(api, PROFILE, {"unitid": "100000"}) == "Match"
    assert await admission_likelihood(api, None, {"unitid": "100000"}) == "Unknown"


@pytest.mark.asyncio
async def test_admission_likelihood_unknown_on_error():
    def handler(request):
        return httpx.Response(500, json={"error": "model offline"})

    assert await admission_likelihood(make_backend_client(handler), PROFILE, {"unitid": "1"}) == "Unknown"


def test_presentation_helpers():
    assert greeting_for_hour(8) == "Good morning"
    assert greeting_for_hour(13) == "Good afternoon"
    assert greeting_for_hour(20) == "Good evening"
    assert confidence_level(80) == "On Track"
    assert confidence_level(20) == "Needs Action"
    assert likelihood_from_probability(0.7) == "Safety"
    assert likelihood_from_probability(None) == "Reach"
    assert estimated_net_cost({}, {"totalEligible": 60000}) == 0
    assert estimated_net_cost({"cost_and_aid": {"tuition_out_of_state": 40000}}, None) == 40000


def test_next_step_targets():
    assert next_step_target("Research college matches") == {"route": "/matching"}
    assert next_step_target("Submit the FAFSA") == {"url": "https://fafsa.gov"}
    assert next_step_target("Talk to a counselor") == {"route": "/student-profile"}


def test_fallback_next_steps_for_new_student():
    steps = fallback_next_steps({"gpa": 3.0}, [], [])

    assert [step["text"] for step in steps] == [
        "Complete your student profile",
        "Find college matches",
        "Complete FAFSA",
        "Take SAT",
    ]
