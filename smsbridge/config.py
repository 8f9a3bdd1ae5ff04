from __future__ import annotations

import os
from urllib.parse import quote
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    value = env_str(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    raw = env_str(key)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default


def env_float(key: str, default: float) -> float:
    raw = env_str(key)
    try:
        return float(raw) if raw is not None else default
    except ValueError:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = (os.getenv(key) or "").strip()
    return value or default


# -----------------------------
# Platform (Eloqua) endpoints
# -----------------------------
ELOQUA_LOGIN_URL = "https://login.eloqua.com"
DEFAULT_TOKEN_TTL_SEC = 28800
OAUTH_SCOPE = "full"

# -----------------------------
# SMS Gateway (TransmitSMS)
# -----------------------------
TRANSMITSMS_BASE_URL = "https://api.transmitsms.com"
MAX_MESSAGE_LENGTH = 612
TRACKED_LINK_TOKEN = "[tracked-link]"
CUSTOM_OBJECT_TEXT_LIMIT = 250
UNBOUNDED_WINDOW_HOURS = 365 * 24


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    ELOQUA_CLIENT_ID: Optional[str]
    ELOQUA_CLIENT_SECRET: Optional[str]
    ELOQUA_AUTHORIZE_URL: str
    ELOQUA_TOKEN_URL: str
    ELOQUA_REVOKE_URL: str
    ELOQUA_ID_URL: str
    APP_BASE_URL: str
    SESSION_SECRET: Optional[str]
    TRANSMITSMS_BASE_URL: str
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    WEBHOOK_TOKEN: Optional[str]
    WORKERS_ENABLED: bool
    HTTP_TIMEOUT_SEC: float
    TOKEN_REFRESH_SKEW_SEC: int
    PLATFORM_MAX_ATTEMPTS: int
    PLATFORM_BACKOFF_BASE_SEC: float
    PLATFORM_BACKOFF_CAP_SEC: float
    SEND_POLL_INTERVAL_SEC: float
    SEND_BATCH_SIZE: int
    SEND_CONCURRENCY: int
    SEND_PACING_MS: int
    JOB_MAX_RETRIES: int
    JOB_RETRY_COOLOFF_SEC: int
    JOB_RETENTION_DAYS: int
    CLEANUP_INTERVAL_SEC: int
    SWEEP_INTERVAL_SEC: float
    SWEEP_BATCH_SIZE: int
    SHUTDOWN_TIMEOUT_SEC: float
    RATE_LIMIT_REQUESTS: int
    RATE_LIMIT_WINDOW_SEC: int


@lru_cache(maxsize=1)
def settings() -> Settings:
    login = (env_str("ELOQUA_LOGIN_URL", ELOQUA_LOGIN_URL) or ELOQUA_LOGIN_URL).rstrip("/")
    return Settings(
        ELOQUA_CLIENT_ID=env_str("ELOQUA_CLIENT_ID"),
        ELOQUA_CLIENT_SECRET=env_str("ELOQUA_CLIENT_SECRET"),
        ELOQUA_AUTHORIZE_URL=env_str("ELOQUA_AUTHORIZE_URL", f"{login}/auth/oauth2/authorize"),
        ELOQUA_TOKEN_URL=env_str("ELOQUA_TOKEN_URL", f"{login}/auth/oauth2/token"),
        ELOQUA_REVOKE_URL=env_str("ELOQUA_REVOKE_URL", f"{login}/auth/oauth2/revoke"),
        ELOQUA_ID_URL=env_str("ELOQUA_ID_URL", f"{login}/id"),
        APP_BASE_URL=(env_str("APP_BASE_URL", "http://localhost:8000") or "").rstrip("/"),
        SESSION_SECRET=env_str("SESSION_SECRET"),
        TRANSMITSMS_BASE_URL=(env_str("TRANSMITSMS_BASE_URL", TRANSMITSMS_BASE_URL) or "").rstrip("/"),
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        REDIS_URL=env_str("REDIS_URL") or env_str("UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        WORKERS_ENABLED=env_bool("WORKERS_ENABLED", True),
        HTTP_TIMEOUT_SEC=env_float("HTTP_TIMEOUT_SEC", 30.0),
        TOKEN_REFRESH_SKEW_SEC=env_int("TOKEN_REFRESH_SKEW_SEC", 300),
        PLATFORM_MAX_ATTEMPTS=env_int("PLATFORM_MAX_ATTEMPTS", 3),
        PLATFORM_BACKOFF_BASE_SEC=env_float("PLATFORM_BACKOFF_BASE_SEC", 0.5),
        PLATFORM_BACKOFF_CAP_SEC=env_float("PLATFORM_BACKOFF_CAP_SEC", 8.0),
        SEND_POLL_INTERVAL_SEC=env_float("SEND_POLL_INTERVAL_SEC", 5.0),
        SEND_BATCH_SIZE=env_int("SEND_BATCH_SIZE", 10),
        SEND_CONCURRENCY=env_int("SEND_CONCURRENCY", 5),
        SEND_PACING_MS=env_int("SEND_PACING_MS", 100),
        JOB_MAX_RETRIES=env_int("JOB_MAX_RETRIES", 3),
        JOB_RETRY_COOLOFF_SEC=env_int("JOB_RETRY_COOLOFF_SEC", 300),
        JOB_RETENTION_DAYS=env_int("JOB_RETENTION_DAYS", 30),
        CLEANUP_INTERVAL_SEC=env_int("CLEANUP_INTERVAL_SEC", 24 * 60 * 60),
        SWEEP_INTERVAL_SEC=env_float("SWEEP_INTERVAL_SEC", 120.0),
        SWEEP_BATCH_SIZE=env_int("SWEEP_BATCH_SIZE", 30),
        SHUTDOWN_TIMEOUT_SEC=env_float("SHUTDOWN_TIMEOUT_SEC", 10.0),
        RATE_LIMIT_REQUESTS=env_int("RATE_LIMIT_REQUESTS", 100),
        RATE_LIMIT_WINDOW_SEC=env_int("RATE_LIMIT_WINDOW_SEC", 60),
    )


def reauth_path(install_id: str) -> str:
    return f"/eloqua/app/authorize?installId={quote(install_id, safe='')}"
