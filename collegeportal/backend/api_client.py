"""
Backend API Client
==================

HTTP client for the matching / probability / RAG / scholarship backend.

Architecture:
    page handlers / reconciler / dashboard
        → BackendApiClient.<operation>()
        → call(name, ...)            consults ENDPOINT_POLICIES
        → request(endpoint, ...)     one central request function
        → backend  {BACKEND_API_URL}{endpoint}

Authentication:
    ``require_auth=True`` attaches ``Authorization: Bearer <token>`` from the
    token getter (the portal session's store). Without a token the call fails
    with ``AuthenticationRequiredError`` before any I/O.

Errors:
    Non-2xx responses raise ``ApiError(status, message)`` with the message
    taken from the body's ``error`` / ``message`` / ``detail`` field, else
    ``"HTTP error! status: N"``. Timeouts and network failures raise
    ``ApiError`` with ``status=None``.

Usage:
    api = BackendApiClient(token_getter=store.get_access_token)
    stats = await api.get_scholarship_stats(profile)     # never raises
    await api.update_profile(user_id, {"gpa": 3.8})      # may raise ApiError
"""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from ..config import get_settings
from .policies import get_policy

logger = logging.getLogger("portal.api")

AUTH_TOKEN_MISSING_MESSAGE = "Authentication token not found. Please log in again."

TokenGetter = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class ApiError(Exception):
    """Backend call failure; ``status`` is None for network errors and timeouts."""

    def __init__(self, message: str, status: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.endpoint = endpoint

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    def to_dict(self) -> Dict[str, Any]:
        return {"code": "api_error", "message": self.message, "status": self.status}


class AuthenticationRequiredError(ApiError):
    """Raised before any I/O when an authenticated call has no token."""

    def __init__(self, endpoint: Optional[str] = None):
        super().__init__(AUTH_TOKEN_MISSING_MESSAGE, status=401, endpoint=endpoint)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": "authentication_required", "message": self.message, "status": self.status}


# =============================================================================
# SHARED HTTP CLIENT
# =============================================================================

_shared_http_client: Optional[httpx.AsyncClient] = None


def get_shared_http_client() -> httpx.AsyncClient:
    """One connection pool for every portal session's backend calls."""
    global _shared_http_client
    if _shared_http_client is None or _shared_http_client.is_closed:
        _shared_http_client = httpx.AsyncClient(timeout=httpx.Timeout(get_settings().api_timeout_s))
    return _shared_http_client


async def close_shared_http_client() -> None:
    global _shared_http_client
    if _shared_http_client is not None:
        await _shared_http_client.aclose()
        _shared_http_client = None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP error! status: {response.status_code}"


class BackendApiClient:

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_getter: Optional[TokenGetter] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.backend_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.api_timeout_s
        self._token_getter = token_getter
        self._http = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http if self._http is not None else get_shared_http_client()

    async def _resolve_token(self) -> Optional[str]:
        if self._token_getter is None:
            return None
        token = self._token_getter()
        if inspect.isawaitable(token):
            token = await token
        return token or None

    # ═══════════════════════════════════════════════════════════════
    # CORE
    # ═══════════════════════════════════════════════════════════════

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        require_auth: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if require_auth:
            token = await self._resolve_token()
            if not token:
                logger.warning("[API] auth required but no token endpoint=%s", endpoint)
                raise AuthenticationRequiredError(endpoint)
            headers["Authorization"] = f"Bearer {token}"

        url = f"{self.base_url}{endpoint}"
        try:
            response = await self.http.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException:
            logger.error("[API] timeout method=%s endpoint=%s", method, endpoint)
            raise ApiError(f"Request timed out: {endpoint}", endpoint=endpoint)
        except httpx.HTTPError as e:
            logger.error("[API] network error method=%s endpoint=%s error=%s", method, endpoint, repr(e))
            raise ApiError(f"Network error: {e}", endpoint=endpoint) from e

        if not response.is_success:
            message = _error_message(response)
            logger.error(
                "[API] request failed method=%s endpoint=%s status=%s error=%s",
                method, endpoint, response.status_code, message,
            )
            raise ApiError(message, status=response.status_code, endpoint=endpoint)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON response from {endpoint}", status=response.status_code, endpoint=endpoint) from e

    async def call(
        self,
        name: str,
        endpoint: str,
        method: str = "GET",
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        require_auth: bool = False,
        use_fallback: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        """``request`` under the failure policy registered for ``name``."""
        policy = get_policy(name)
        try:
            return await self.request(
                endpoint, method=method, json=json, params=params,
                require_auth=require_auth, timeout=timeout,
            )
        except ApiError as e:
            if policy.not_found_as_none and e.is_not_found:
                return None
            if policy.is_fallback and use_fallback:
                logger.warning(
                    "[API] fallback name=%s endpoint=%s status=%s error=%s",
                    name, endpoint, e.status, e.message,
                )
                return policy.fallback_value(e)
            raise

    # ═══════════════════════════════════════════════════════════════
    # PROFILE (authenticated)
    # ═══════════════════════════════════════════════════════════════

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Profile for ``user_id``, or None when the backend has none."""
        return await self.call("profile.get", f"/profile/{user_id}", require_auth=True)

    async def create_profile(self, user_id: str, profile_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "profile.create", "/profile", method="POST",
            json={"userId": user_id, "profileData": profile_data}, require_auth=True,
        )

    async def update_profile(self, user_id: str, profile_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "profile.update", f"/profile/{user_id}", method="PUT",
            json={"profileData": profile_data}, require_auth=True,
        )

    async def get_profile_assessment(self, profile_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call("profile.assess", "/profile/assess", method="POST", json=profile_data)

    async def save_profile(self, profile_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call("profile.save", "/profile/save", method="POST", json=profile_data, require_auth=True)

    async def delete_profile(self, profile_id: str) -> Dict[str, Any]:
        return await self.call("profile.delete", f"/profile/{profile_id}", method="DELETE", require_auth=True)

    # ═══════════════════════════════════════════════════════════════
    # USER STATS & APPLICATIONS (authenticated)
    # ═══════════════════════════════════════════════════════════════

    async def track_application(self, scholarship: Dict[str, Any]) -> Dict[str, Any]:
        funds = ((scholarship.get("award_info") or {}).get("funds") or {})
        return await self.call(
            "user.track_application", "/user/applications", method="POST",
            json={"scholarshipId": scholarship.get("_id"), "amount": funds.get("amount") or 0},
            require_auth=True,
        )

    async def get_user_stats(self, user_id: str, use_fallback: bool = True) -> Dict[str, Any]:
        return await self.call("user.stats", f"/user/stats/{user_id}", require_auth=True, use_fallback=use_fallback)

    async def get_user_applications(self, user_id: str) -> Dict[str, Any]:
        return await self.call("user.applications", f"/user/applications/{user_id}", require_auth=True)

    async def get_user_saved_scholarships(self, user_id: str) -> Dict[str, Any]:
        return await self.call("user.saved_scholarships", f"/user/saved-scholarships/{user_id}", require_auth=True)

    async def save_scholarship(self, user_id: str, scholarship_id: str) -> Dict[str, Any]:
        return await self.call(
            "user.save_scholarship", "/user/save-scholarship", method="POST",
            json={"userId": user_id, "scholarshipId": scholarship_id}, require_auth=True,
        )

    async def remove_saved_scholarship(self, user_id: str, scholarship_id: str) -> Dict[str, Any]:
        return await self.call(
            "user.remove_scholarship", "/user/remove-scholarship", method="DELETE",
            json={"userId": user_id, "scholarshipId": scholarship_id}, require_auth=True,
        )

    # ═══════════════════════════════════════════════════════════════
    # INSTITUTIONS
    # ═══════════════════════════════════════════════════════════════

    async def search_institutions(self, search_config: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call("institutions.search", "/institutions/search", method="POST", json=search_config)

    async def get_institutions_by_filters(
        self,
        filters: Dict[str, Any],
        pagination: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self.search_institutions({"filters": filters, "pagination": pagination or {"page": 1, "limit": 20}})

    async def get_institution_details(self, unit_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not unit_id:
            return None
        return await self.call("institutions.details", f"/institutions/{unit_id}")

    async def get_institutions_by_ids(self, unit_ids: Optional[List[str]]) -> List[Dict[str, Any]]:
        if not unit_ids:
            return []
        return await self.call("institutions.batch", "/institutions/batch", method="POST", json={"unitIds": unit_ids})

    # ═══════════════════════════════════════════════════════════════
    # PROBABILITY
    # ═══════════════════════════════════════════════════════════════

    async def calculate_probabilities(
        self,
        student_profile: Dict[str, Any],
        college_ids: List[str],
        use_fallback: bool = True,
    ) -> Dict[str, Any]:
        return await self.call(
            "probability.calculate", "/probability/calculate", method="POST",
            json={"studentProfile": student_profile, "collegeIds": college_ids},
            use_fallback=use_fallback,
        )

    async def get_college_probability_stats(self, college_id: str) -> Optional[Dict[str, Any]]:
        return await self.call("probability.stats", f"/probability/stats/{college_id}")

    async def compare_college_probabilities(self, student_profile: Dict[str, Any], college_ids: List[str]) -> Dict[str, Any]:
        return await self.call(
            "probability.compare", "/probability/compare", method="POST",
            json={"studentProfile": student_profile, "collegeIds": college_ids},
        )

    async def get_probability_trends(self, college_id: str, years: int = 5) -> Optional[Dict[str, Any]]:
        return await self.call("probability.trends", f"/probability/trends/{college_id}", params={"years": years})

    # ═══════════════════════════════════════════════════════════════
    # RAG
    # ═══════════════════════════════════════════════════════════════

    async def send_rag_query(self, query: str, history: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        return await self.call("rag.query", "/rag/query", method="POST", json={"question": query, "history": history or []})

    async def get_top_matches(self, profile: Optional[Dict[str, Any]], use_fallback: bool = True) -> Dict[str, Any]:
        return await self.call(
            "rag.top_matches", "/rag/top-matches", method="POST",
            json={"studentProfile": profile}, use_fallback=use_fallback,
        )

    async def get_scholarship_summary(self, profile: Optional[Dict[str, Any]], use_fallback: bool = True) -> Dict[str, Any]:
        return await self.call(
            "rag.scholarships", "/rag/scholarships", method="POST",
            json={"studentProfile": profile}, use_fallback=use_fallback,
        )

    async def check_rag_health(self) -> Dict[str, Any]:
        return await self.call("rag.health", "/rag/health")

    # ═══════════════════════════════════════════════════════════════
    # SCHOLARSHIPS
    # ═══════════════════════════════════════════════════════════════

    async def search_scholarships(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call("scholarships.search", "/scholarships/search", method="POST", json=params)

    async def search_scholarships_by_profile(self, student_profile: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "scholarships.by_profile", "/scholarships/search", method="POST",
            json={"studentProfile": student_profile},
        )

    async def get_scholarship_recommendations(self, student_profile: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "scholarships.recommendations", "/scholarships/recommendations",
            params={"studentProfile": json.dumps(student_profile)},
        )

    async def get_scholarship_stats(self, student_profile: Optional[Dict[str, Any]], use_fallback: bool = True) -> Dict[str, Any]:
        return await self.call(
            "scholarships.stats", "/scholarships/stats",
            params={"studentProfile": json.dumps(student_profile)}, use_fallback=use_fallback,
        )

    async def search_scholarships_by_text(
        self,
        search_text: str,
        student_profile: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params = {"q": search_text}
        if student_profile:
            params["studentProfile"] = json.dumps(student_profile)
        return await self.call("scholarships.text", "/scholarships/search-text", params=params)

    async def get_scholarships_by_category(self, category: str) -> Dict[str, Any]:
        return await self.call("scholarships.category", f"/scholarships/category/{quote(category, safe='')}")

    async def get_scholarship_categories(self) -> Dict[str, Any]:
        return await self.call("scholarships.categories", "/scholarships/categories")

    async def get_upcoming_deadlines(self, days: int = 30, use_fallback: bool = True) -> Dict[str, Any]:
        return await self.call(
            "scholarships.deadlines", "/scholarships/deadlines",
            params={"days": days}, use_fallback=use_fallback,
        )

    async def advanced_scholarship_match(self, student_profile: Dict[str, Any], filters: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "scholarships.match", "/scholarships/match", method="POST",
            json={"studentProfile": student_profile, "filters": filters},
        )

    async def find_matching_scholarships(self, student_profile: Dict[str, Any]) -> Dict[str, Any]:
        return await self.call(
            "matching.scholarships", "/matching/scholarships", method="POST",
            json={"studentProfile": student_profile}, require_auth=True,
        )

    async def get_scholarship_by_id(self, scholarship_id: str) -> Dict[str, Any]:
        return await self.call("scholarships.by_id", f"/scholarships/{scholarship_id}")

    # ═══════════════════════════════════════════════════════════════
    # DASHBOARD
    # ═══════════════════════════════════════════════════════════════

    async def get_next_steps(
        self,
        profile: Optional[Dict[str, Any]],
        college_matches: List[Dict[str, Any]],
        deadlines: List[Dict[str, Any]],
        context: Optional[Dict[str, Any]] = None,
        use_fallback: bool = True,
    ) -> Dict[str, Any]:
        return await self.call(
            "dashboard.next_steps", "/dashboard/next-steps", method="POST",
            json={
                "studentProfile": profile,
                "collegeMatches": college_matches,
                "deadlines": deadlines,
                "context": context or {},
            },
            use_fallback=use_fallback,
        )
