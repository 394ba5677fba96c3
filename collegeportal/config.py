import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


REQUIRED_ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "BACKEND_API_URL",
)


def _str_to_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "y", "on")


@dataclass
class Settings:
    backend_api_url: str
    supabase_url: str | None
    supabase_anon_key: str | None
    public_app_url: str
    api_timeout_s: float
    auth_timeout_s: float
    dashboard_branch_timeout_s: float
    callback_wait_s: float
    session_cookie_name: str
    session_ttl_s: int
    cookie_secure: bool
    redis_host: str | None
    redis_port: int
    redis_password: str | None
    redis_tls: bool
    redis_db: int
    redis_tls_verify: bool
    use_local_redis: bool
    service_version: str

    @property
    def auth_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def callback_url(self) -> str:
        return f"{self.public_app_url.rstrip('/')}/auth/callback"


def get_settings() -> Settings:
    use_local = _str_to_bool(os.getenv("USE_LOCAL_REDIS"))

    raw_host = os.getenv("REDIS_HOST")
    raw_port = os.getenv("REDIS_PORT")
    raw_pwd = os.getenv("REDIS_PASSWORD")
    raw_tls = os.getenv("REDIS_TLS")
    raw_db = os.getenv("REDIS_DB")
    raw_tls_verify = os.getenv("REDIS_TLS_VERIFY", "true")

    if use_local:
        host = "127.0.0.1"
        port = 6379
        password = None
        tls = False
        db = int(raw_db or "0")
        tls_verify = False
    else:
        host = raw_host
        port = int(raw_port or "6379")
        password = raw_pwd
        tls = _str_to_bool(raw_tls)
        db = int(raw_db or "0")
        tls_verify = _str_to_bool(raw_tls_verify)

    return Settings(
        backend_api_url=os.getenv("BACKEND_API_URL", "http://127.0.0.1:8080/api").rstrip("/"),
        supabase_url=(os.getenv("SUPABASE_URL") or "").rstrip("/") or None,
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
        public_app_url=os.getenv("PUBLIC_APP_URL", "http://localhost:8090"),
        api_timeout_s=float(os.getenv("API_TIMEOUT_S", "15")),
        auth_timeout_s=float(os.getenv("AUTH_TIMEOUT_S", "10")),
        dashboard_branch_timeout_s=float(os.getenv("DASHBOARD_BRANCH_TIMEOUT_S", "20")),
        callback_wait_s=float(os.getenv("CALLBACK_WAIT_S", "10")),
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "portal_sid"),
        session_ttl_s=int(os.getenv("SESSION_TTL_S", str(7 * 24 * 3600))),
        cookie_secure=_str_to_bool(os.getenv("COOKIE_SECURE")),
        redis_host=host,
        redis_port=port,
        redis_password=password,
        redis_tls=tls,
        redis_db=db,
        redis_tls_verify=tls_verify,
        use_local_redis=use_local,
        service_version=os.getenv("SERVICE_VERSION", "0.1.0"),
    )


def check_required_env() -> dict:
    """Report which required variables are set, without exposing their values."""
    status = {name: ("SET" if os.getenv(name) else "MISSING") for name in REQUIRED_ENV_VARS}
    missing = [name for name, state in status.items() if state == "MISSING"]
    return {"variables": status, "missing": missing, "ok": not missing}
