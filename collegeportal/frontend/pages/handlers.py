"""
Page Handlers
=============

JSON handlers behind the gated page endpoints. Every handler receives the
caller's ``PortalSession`` (already admitted by the route gate) and answers
with the envelope used across the service:

    {"success": True,  "data": ...}
    {"success": False, "error": {"code": ..., "message": ..., "status": ...}}

Reads go through the API client's fallback policy and therefore rarely
fail; state-changing calls propagate their ``ApiError`` here, where it is
turned into the error envelope.

Pages:
    - student profile : get / update / assess
    - dashboard       : aggregated load (see dashboard.py)
    - matching        : institutions, probabilities, comparisons
    - scholarships    : search, deadlines, applications, saved scholarships
    - forecaster      : RAG query, RAG health
"""

import logging
from typing import Any, Awaitable, Dict, List, Optional

from ...backend.api_client import ApiError
from ...config import get_settings
from ...ws_events import WS_EVENTS
from .dashboard import DashboardLoader, admission_likelihood

logger = logging.getLogger("portal.pages")


class PageHandlers:

    def __init__(self, dashboard_branch_timeout: Optional[float] = None):
        self.dashboard_branch_timeout = dashboard_branch_timeout

    async def _respond(self, operation: str, portal, awaitable: Awaitable[Any]) -> Dict[str, Any]:
        try:
            data = await awaitable
        except ApiError as e:
            logger.error(
                "[PAGES] %s failed sid=%s status=%s error=%s",
                operation, portal.sid[:8], e.status, e.message,
            )
            return {"success": False, "error": e.to_dict()}
        return {"success": True, "data": data}

    @staticmethod
    def _user_id(portal) -> Optional[str]:
        session = portal.session
        return session.user_id if session else None

    # ═══════════════════════════════════════════════════════════════
    # STUDENT PROFILE
    # ═══════════════════════════════════════════════════════════════

    async def get_student_profile(self, portal) -> Dict[str, Any]:
        return {"success": True, "data": portal.reconciler.state.to_dict()}

    async def update_student_profile(self, portal, profile_data: Dict[str, Any]) -> Dict[str, Any]:
        """Update the backend profile, then recompute completeness (and the gate)."""
        user_id = self._user_id(portal)

        async def update() -> Dict[str, Any]:
            updated = await portal.api.update_profile(user_id, profile_data)
            if not isinstance(updated, dict) or not updated:
                updated = {**(portal.profile or {}), **profile_data}
            await portal.apply_profile_update(updated)
            return {
                **portal.reconciler.state.to_dict(),
                "routeState": portal.route(None).state.value,
            }

        return await self._respond("profile.update", portal, update())

    async def assess_profile(self, portal, profile_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._respond(
            "profile.assess", portal,
            portal.api.get_profile_assessment(profile_data or portal.profile or {}),
        )

    # ═══════════════════════════════════════════════════════════════
    # DASHBOARD
    # ═══════════════════════════════════════════════════════════════

    async def load_dashboard(self, portal) -> Dict[str, Any]:
        loader = DashboardLoader(portal.api, branch_timeout=self.dashboard_branch_timeout)
        response = await self._respond("dashboard.load", portal, loader.load(portal.profile, portal.session))
        if response["success"]:
            errors = response["data"]["errors"]
            await portal.hub.broadcast(portal.sid, {
                "type": WS_EVENTS.DASHBOARD.PARTIAL_ERROR if errors else WS_EVENTS.DASHBOARD.LOADED,
                "payload": {"errors": errors, "meta": response["data"]["meta"]},
            })
        return response

    async def admission_likelihood(self, portal, college: Dict[str, Any]) -> Dict[str, Any]:
        level = await admission_likelihood(portal.api, portal.profile, college)
        return {"success": True, "data": {"unitid": college.get("unitid"), "level": level}}

    # ═══════════════════════════════════════════════════════════════
    # MATCHING
    # ═══════════════════════════════════════════════════════════════

    async def search_institutions(self, portal, search_config: Dict[str, Any]) -> Dict[str, Any]:
        return await self._respond("institutions.search", portal, portal.api.search_institutions(search_config))

    async def institution_details(self, portal, unit_id: str) -> Dict[str, Any]:
        details = await portal.api.get_institution_details(unit_id)
        if details is None:
            return {
                "success": False,
                "error": {"code": "not_found", "message": f"Institution {unit_id} not found", "status": 404},
            }
        return {"success": True, "data": details}

    async def institutions_batch(self, portal, unit_ids: List[str]) -> Dict[str, Any]:
        return await self._respond("institutions.batch", portal, portal.api.get_institutions_by_ids(unit_ids))

    async def calculate_probabilities(
        self,
        portal,
        college_ids: List[str],
        student_profile: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._respond(
            "probability.calculate", portal,
            portal.api.calculate_probabilities(student_profile or portal.profile or {}, college_ids),
        )

    async def compare_colleges(
        self,
        portal,
        college_ids: List[str],
        student_profile: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._respond(
            "probability.compare", portal,
            portal.api.compare_college_probabilities(student_profile or portal.profile or {}, college_ids),
        )

    async def probability_stats(self, portal, college_id: str) -> Dict[str, Any]:
        return await self._respond("probability.stats", portal, portal.api.get_college_probability_stats(college_id))

    async def probability_trends(self, portal, college_id: str, years: int = 5) -> Dict[str, Any]:
        return await self._respond(
            "probability.trends", portal, portal.api.get_probability_trends(college_id, years=years),
        )

    # ═══════════════════════════════════════════════════════════════
    # SCHOLARSHIPS
    # ═══════════════════════════════════════════════════════════════

    async def search_scholarships(self, portal, params: Dict[str, Any]) -> Dict[str, Any]:
        if not params:
            return await self._respond(
                "scholarships.by_profile", portal,
                portal.api.search_scholarships_by_profile(portal.profile or {}),
            )
        return await self._respond("scholarships.search", portal, portal.api.search_scholarships(params))

    async def search_scholarships_by_text(self, portal, text: str) -> Dict[str, Any]:
        return await self._respond(
            "scholarships.text", portal,
            portal.api.search_scholarships_by_text(text, portal.profile),
        )

    async def scholarship_recommendations(self, portal) -> Dict[str, Any]:
        return await self._respond(
            "scholarships.recommendations", portal,
            portal.api.get_scholarship_recommendations(portal.profile or {}),
        )

    async def scholarship_categories(self, portal) -> Dict[str, Any]:
        return await self._respond("scholarships.categories", portal, portal.api.get_scholarship_categories())

    async def scholarships_by_category(self, portal, category: str) -> Dict[str, Any]:
        return await self._respond(
            "scholarships.category", portal, portal.api.get_scholarships_by_category(category),
        )

    async def scholarship_by_id(self, portal, scholarship_id: str) -> Dict[str, Any]:
        return await self._respond("scholarships.by_id", portal, portal.api.get_scholarship_by_id(scholarship_id))

    async def match_scholarships(self, portal, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        profile = portal.profile or {}
        if filters:
            return await self._respond(
                "scholarships.match", portal, portal.api.advanced_scholarship_match(profile, filters),
            )
        return await self._respond("matching.scholarships", portal, portal.api.find_matching_scholarships(profile))

    async def upcoming_deadlines(self, portal, days: int = 30) -> Dict[str, Any]:
        return await self._respond("scholarships.deadlines", portal, portal.api.get_upcoming_deadlines(days))

    async def scholarship_stats(self, portal) -> Dict[str, Any]:
        return await self._respond("scholarships.stats", portal, portal.api.get_scholarship_stats(portal.profile))

    async def track_application(self, portal, scholarship: Dict[str, Any]) -> Dict[str, Any]:
        return await self._respond("user.track_application", portal, portal.api.track_application(scholarship))

    async def applications(self, portal) -> Dict[str, Any]:
        return await self._respond(
            "user.applications", portal, portal.api.get_user_applications(self._user_id(portal)),
        )

    async def saved_scholarships(self, portal) -> Dict[str, Any]:
        return await self._respond(
            "user.saved_scholarships", portal, portal.api.get_user_saved_scholarships(self._user_id(portal)),
        )

    async def save_scholarship(self, portal, scholarship_id: str) -> Dict[str, Any]:
        return await self._respond(
            "user.save_scholarship", portal, portal.api.save_scholarship(self._user_id(portal), scholarship_id),
        )

    async def remove_saved_scholarship(self, portal, scholarship_id: str) -> Dict[str, Any]:
        return await self._respond(
            "user.remove_scholarship", portal,
            portal.api.remove_saved_scholarship(self._user_id(portal), scholarship_id),
        )

    # ═══════════════════════════════════════════════════════════════
    # FORECASTER
    # ═══════════════════════════════════════════════════════════════

    async def rag_query(self, portal, question: str, history: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        return await self._respond("rag.query", portal, portal.api.send_rag_query(question, history))

    async def rag_health(self, portal) -> Dict[str, Any]:
        return await self._respond("rag.health", portal, portal.api.check_rag_health())


# ═══════════════════════════════════════════════════════════════
# SINGLETON
# ═══════════════════════════════════════════════════════════════

_page_handlers: Optional[PageHandlers] = None


def get_page_handlers() -> PageHandlers:
    """Singleton accessor for the page handlers."""
    global _page_handlers
    if _page_handlers is None:
        _page_handlers = PageHandlers(dashboard_branch_timeout=get_settings().dashboard_branch_timeout_s)
    return _page_handlers
