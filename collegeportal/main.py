import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from .backend.api_client import close_shared_http_client
from .config import check_required_env, get_settings
from .frontend.core.auth_callback import (
    CallbackStatus,
    handle_auth_callback,
    parse_auth_code,
    parse_redirect_error,
)
from .frontend.core.portal_session import PortalSession, get_portal_registry
from .frontend.core.route_gate import View, view_for_path
from .frontend.pages.handlers import get_page_handlers
from .identity.models import AuthResult
from .identity.provider import get_identity_provider
from .logging_setup import configure_logging
from .redis_client import get_redis
from .ws_events import WS_EVENTS
from .ws_hub import hub

configure_logging()
logger = logging.getLogger("portal.app")

app = FastAPI(title="college-portal-bff")

START_TIME = time.time()

settings = get_settings()
VERSION = settings.service_version
logger.info("service_start version=%s backend=%s auth_configured=%s", VERSION, settings.backend_api_url, settings.auth_configured)
logger.info(
    "redis_mode mode=%s host=%s port=%s tls=%s",
    "local" if settings.use_local_redis else "cloud", settings.redis_host, settings.redis_port, settings.redis_tls,
)


@app.on_event("startup")
def on_startup():
    provider = get_identity_provider()
    logger.info("identity_provider status=ready enabled=%s", provider.enabled)
    env = check_required_env()
    if not env["ok"]:
        logger.warning("env_check status=incomplete missing=%s", ",".join(env["missing"]))


@app.on_event("shutdown")
async def on_shutdown():
    await close_shared_http_client()
    await get_identity_provider().aclose()
    logger.info("http_clients status=closed")


@app.middleware("http")
async def session_cookie_middleware(request: Request, call_next):
    """Every browser gets an opaque ``sid`` cookie naming its portal session."""
    sid = request.cookies.get(settings.session_cookie_name)
    is_new = not sid
    if is_new:
        sid = secrets.token_urlsafe(32)
    request.state.sid = sid
    response = await call_next(request)
    if is_new:
        response.set_cookie(
            settings.session_cookie_name,
            sid,
            max_age=settings.session_ttl_s,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
        )
    return response


# ===================== Health =====================

def _redis_status() -> str:
    try:
        get_redis().ping()
        return "ok"
    except Exception as e:
        logger.error("redis_ping status=error error=%s", repr(e))
        return "error"


@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "version": VERSION,
        "redis": _redis_status(),
        "auth_configured": settings.auth_configured,
        "portal_sessions": len(get_portal_registry()),
        "uptime_s": int(time.time() - START_TIME),
    }


@app.get("/version")
def version():
    return {"version": VERSION}


@app.get("/readyz")
def readyz():
    if _redis_status() != "ok":
        raise HTTPException(status_code=503, detail={"ok": False, "error": "redis_unavailable"})
    return {"ok": True}


@app.get("/debug/env")
def debug_env():
    report = check_required_env()
    report["identity_provider"] = "enabled" if get_identity_provider().enabled else "disabled"
    return report


# ===================== Portal session =====================

async def get_portal(request: Request) -> PortalSession:
    portal = get_portal_registry().get_or_create(request.state.sid)
    await portal.ensure_ready(settings.callback_wait_s)
    return portal


def _auth_response(portal: PortalSession, result: AuthResult) -> JSONResponse:
    body = result.to_dict()
    decision = portal.route(None)
    body["routeState"] = decision.state.value
    body["redirectTo"] = decision.view.path if decision.view else None
    if result.ok:
        return JSONResponse(body)
    status = result.error.status if result.error.status and 400 <= result.error.status < 600 else 400
    return JSONResponse(body, status_code=status)


def _envelope(result: Dict[str, Any]) -> JSONResponse:
    if result.get("success"):
        return JSONResponse(result)
    status = (result.get("error") or {}).get("status")
    if status not in (401, 404):
        status = 502
    return JSONResponse(result, status_code=status)


def _gate(portal: PortalSession, request: Request) -> Optional[JSONResponse]:
    """None when the request may reach its page handler."""
    decision = portal.route(request.url.path)
    if decision.view is None:
        return JSONResponse({"success": False, "route": decision.to_dict()}, status_code=202)
    if decision.redirect_to:
        logger.info(
            "route_redirect sid=%s path=%s state=%s to=%s",
            portal.sid[:8], request.url.path, decision.state.value, decision.redirect_to,
        )
        return RedirectResponse(decision.redirect_to, status_code=303)
    return None


def _safe_return_path(path: Optional[str]) -> str:
    if not path or not path.startswith("/") or path.startswith("//"):
        return View.DASHBOARD.path
    view = view_for_path(path)
    if view is None or view in (View.LOGIN, View.AUTH_CALLBACK):
        return View.DASHBOARD.path
    return path


# ===================== Auth =====================

class CredentialsBody(BaseModel):
    email: str
    password: str
    data: Optional[Dict[str, Any]] = None


class EmailBody(BaseModel):
    email: str


class OtpVerifyBody(BaseModel):
    email: str
    token: str


class PasswordBody(BaseModel):
    password: str


class CallbackBody(BaseModel):
    redirect_url: str


@app.get("/auth/session")
async def auth_session(path: Optional[str] = Query(default=None), portal: PortalSession = Depends(get_portal)):
    return {**portal.snapshot(), "route": portal.route(path).to_dict()}


@app.post("/auth/sign-in")
async def auth_sign_in(body: CredentialsBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.sign_in(body.email, body.password))


@app.post("/auth/sign-up")
async def auth_sign_up(body: CredentialsBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.sign_up(body.email, body.password, data=body.data))


@app.post("/auth/sign-out")
async def auth_sign_out(portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.sign_out())


@app.get("/auth/oauth/{provider}")
async def auth_oauth(
    provider: str,
    return_path: Optional[str] = Query(default=None),
    portal: PortalSession = Depends(get_portal),
):
    result = await portal.store.sign_in_with_oauth(provider, return_path=_safe_return_path(return_path))
    if not result.ok:
        return _auth_response(portal, result)
    return RedirectResponse(result.data["url"], status_code=303)


async def _run_callback(portal: PortalSession, redirect_url: str):
    code = parse_auth_code(redirect_url)
    if code and parse_redirect_error(redirect_url) is None and portal.session is None:
        try:
            pending = portal.store.pending_actions.has_pending_action(portal.sid)
        except RedisError as e:
            logger.error("callback_pending_lookup sid=%s error=%s", portal.sid[:8], repr(e))
            pending = False
        if pending:
            portal.store.start_code_exchange(code)

    outcome = await handle_auth_callback(portal, redirect_url, settings.callback_wait_s)
    if outcome.status is CallbackStatus.PENDING:
        return JSONResponse(outcome.to_dict(), status_code=202)
    return outcome


@app.get("/auth/callback")
async def auth_callback(request: Request, portal: PortalSession = Depends(get_portal)):
    outcome = await _run_callback(portal, str(request.url))
    if isinstance(outcome, JSONResponse):
        return outcome
    if outcome.status is CallbackStatus.REDIRECT:
        return RedirectResponse(outcome.redirect_to, status_code=303)
    return outcome.to_dict()


@app.post("/auth/callback")
async def auth_callback_fragment(body: CallbackBody, portal: PortalSession = Depends(get_portal)):
    """Same as GET, for redirects whose parameters arrive in the URL fragment."""
    outcome = await _run_callback(portal, body.redirect_url)
    if isinstance(outcome, JSONResponse):
        return outcome
    return outcome.to_dict()


@app.post("/auth/reset-password")
async def auth_reset_password(body: EmailBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.reset_password_for_email(body.email))


@app.post("/auth/otp")
async def auth_otp(body: EmailBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.sign_in_with_otp(body.email))


@app.post("/auth/otp/verify")
async def auth_otp_verify(body: OtpVerifyBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.verify_otp(body.email, body.token))


@app.post("/auth/password")
async def auth_password(body: PasswordBody, portal: PortalSession = Depends(get_portal)):
    return _auth_response(portal, await portal.store.update_password(body.password))


@app.get("/view")
async def view(path: str = Query(default="/"), portal: PortalSession = Depends(get_portal)):
    return portal.route(path).to_dict()


# ===================== Pages (gated) =====================

@app.get("/student-profile")
async def student_profile(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().get_student_profile(portal))


@app.put("/student-profile")
async def student_profile_update(
    request: Request,
    profile_data: Dict[str, Any] = Body(...),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().update_student_profile(portal, profile_data))


@app.post("/student-profile/assess")
async def student_profile_assess(
    request: Request,
    profile_data: Optional[Dict[str, Any]] = Body(default=None),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().assess_profile(portal, profile_data))


@app.get("/dashboard")
async def dashboard(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().load_dashboard(portal))


@app.post("/dashboard/likelihood")
async def dashboard_likelihood(
    request: Request,
    college: Dict[str, Any] = Body(...),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().admission_likelihood(portal, college))


class CollegeIdsBody(BaseModel):
    collegeIds: List[str]
    studentProfile: Optional[Dict[str, Any]] = None


class UnitIdsBody(BaseModel):
    unitIds: List[str]


@app.post("/matching/institutions/search")
async def matching_search(
    request: Request,
    search_config: Dict[str, Any] = Body(...),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().search_institutions(portal, search_config))


@app.post("/matching/institutions/batch")
async def matching_batch(request: Request, body: UnitIdsBody, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().institutions_batch(portal, body.unitIds))


@app.get("/matching/institutions/{unit_id}")
async def matching_institution(unit_id: str, request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().institution_details(portal, unit_id))


@app.post("/matching/probabilities")
async def matching_probabilities(request: Request, body: CollegeIdsBody, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(
        await get_page_handlers().calculate_probabilities(portal, body.collegeIds, body.studentProfile)
    )


@app.get("/matching/probability/{college_id}/stats")
async def matching_probability_stats(college_id: str, request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().probability_stats(portal, college_id))


@app.get("/matching/probability/{college_id}/trends")
async def matching_probability_trends(
    college_id: str,
    request: Request,
    years: int = Query(default=5),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().probability_trends(portal, college_id, years))


@app.post("/compare")
async def compare(request: Request, body: CollegeIdsBody, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(
        await get_page_handlers().compare_colleges(portal, body.collegeIds, body.studentProfile)
    )


class ScholarshipRefBody(BaseModel):
    scholarshipId: str


@app.post("/scholarships/search")
async def scholarships_search(
    request: Request,
    params: Optional[Dict[str, Any]] = Body(default=None),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().search_scholarships(portal, params or {}))


@app.get("/scholarships/search-text")
async def scholarships_search_text(request: Request, q: str = Query(...), portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().search_scholarships_by_text(portal, q))


@app.get("/scholarships/recommendations")
async def scholarships_recommendations(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().scholarship_recommendations(portal))


@app.get("/scholarships/categories")
async def scholarships_categories(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().scholarship_categories(portal))


@app.get("/scholarships/category/{category}")
async def scholarships_category(category: str, request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().scholarships_by_category(portal, category))


@app.get("/scholarships/deadlines")
async def scholarships_deadlines(
    request: Request,
    days: int = Query(default=30),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().upcoming_deadlines(portal, days))


@app.get("/scholarships/stats")
async def scholarships_stats(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().scholarship_stats(portal))


@app.post("/scholarships/match")
async def scholarships_match(
    request: Request,
    filters: Optional[Dict[str, Any]] = Body(default=None),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().match_scholarships(portal, filters))


@app.get("/scholarships/applications")
async def scholarships_applications(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().applications(portal))


@app.post("/scholarships/applications")
async def scholarships_track_application(
    request: Request,
    scholarship: Dict[str, Any] = Body(...),
    portal: PortalSession = Depends(get_portal),
):
    return _gate(portal, request) or _envelope(await get_page_handlers().track_application(portal, scholarship))


@app.get("/scholarships/saved")
async def scholarships_saved(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().saved_scholarships(portal))


@app.post("/scholarships/saved")
async def scholarships_save(request: Request, body: ScholarshipRefBody, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().save_scholarship(portal, body.scholarshipId))


@app.delete("/scholarships/saved/{scholarship_id}")
async def scholarships_unsave(scholarship_id: str, request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(
        await get_page_handlers().remove_saved_scholarship(portal, scholarship_id)
    )


@app.get("/scholarships/{scholarship_id}")
async def scholarship_by_id(scholarship_id: str, request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().scholarship_by_id(portal, scholarship_id))


class RagQueryBody(BaseModel):
    question: str
    history: List[Dict[str, Any]] = []


@app.post("/forecaster/query")
async def forecaster_query(request: Request, body: RagQueryBody, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(
        await get_page_handlers().rag_query(portal, body.question, body.history)
    )


@app.get("/forecaster/health")
async def forecaster_health(request: Request, portal: PortalSession = Depends(get_portal)):
    return _gate(portal, request) or _envelope(await get_page_handlers().rag_health(portal))


# ===================== WebSocket =====================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    sid = ws.cookies.get(settings.session_cookie_name)
    await ws.accept()
    if not sid:
        await ws.close(code=4401)
        return

    portal = get_portal_registry().get_or_create(sid)
    await hub.register(sid, ws)
    try:
        await portal.ensure_ready(settings.callback_wait_s)
        await ws.send_json({
            "type": WS_EVENTS.CONNECTION.READY,
            "payload": {**portal.snapshot(), "route": portal.route(None).to_dict()},
        })
        while True:
            message = await ws.receive_json()
            if not isinstance(message, dict):
                logger.warning("ws_bad_message sid=%s kind=%s", sid[:8], type(message).__name__)
                continue
            if message.get("type") == WS_EVENTS.CONNECTION.PING:
                await ws.send_json({"type": WS_EVENTS.CONNECTION.PONG, "payload": {"ts": time.time()}})
    except WebSocketDisconnect as e:
        logger.info("ws_disconnect sid=%s code=%s", sid[:8], getattr(e, "code", None))
    except ValueError as e:
        logger.warning("ws_bad_message sid=%s error=%s", sid[:8], repr(e))
    finally:
        await hub.unregister(sid, ws)
