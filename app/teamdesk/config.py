import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    session_ttl_hours: int

    auth_rate_limit_max: int
    auth_rate_limit_window: int
    api_rate_limit_max: int
    api_rate_limit_window: int
    action_rate_limit_max: int
    action_rate_limit_window: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///teamdesk.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        session_ttl_hours=_getenv_int("SESSION_TTL_HOURS", 24 * 7),
        auth_rate_limit_max=_getenv_int("AUTH_RATE_LIMIT_MAX", 5),
        auth_rate_limit_window=_getenv_int("AUTH_RATE_LIMIT_WINDOW", 15 * 60),
        api_rate_limit_max=_getenv_int("API_RATE_LIMIT_MAX", 100),
        api_rate_limit_window=_getenv_int("API_RATE_LIMIT_WINDOW", 60),
        action_rate_limit_max=_getenv_int("ACTION_RATE_LIMIT_MAX", 10),
        action_rate_limit_window=_getenv_int("ACTION_RATE_LIMIT_WINDOW", 60),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "SESSION_TTL_HOURS": s.session_ttl_hours,
        "AUTH_RATE_LIMIT_MAX": s.auth_rate_limit_max,
        "AUTH_RATE_LIMIT_WINDOW": s.auth_rate_limit_window,
        "API_RATE_LIMIT_MAX": s.api_rate_limit_max,
        "API_RATE_LIMIT_WINDOW": s.api_rate_limit_window,
        "ACTION_RATE_LIMIT_MAX": s.action_rate_limit_max,
        "ACTION_RATE_LIMIT_WINDOW": s.action_rate_limit_window,
        # security defaults
        "SESSION_COOKIE_NAME": "teamdesk_session",
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # JSON bodies only; nothing here needs large uploads
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
    }
