"""
Process-wide helpers: logging setup, UTC time handling, small string
utilities and an async retry loop with capped exponential backoff.
"""

from __future__ import annotations
import asyncio
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_NON_DIGITS = re.compile(r"\D+")
_state = {"logging": False, "env_logged": False}


# ── logging ──────────────────────────────────────
def mask_value(value: Optional[str]) -> str:
    """Show only the ends of a secret: ``abcd...wxyz``."""
    text = (value or "").strip()
    if not text:
        return "<missing>"
    keep = 2 if len(text) <= 8 else 4
    if len(text) <= 4:
        return "*" * len(text)
    return f"{text[:keep]}...{text[-keep:]}"


def _level(value: int | str | None) -> int:
    value = value if value is not None else os.getenv("SMS_LOG_LEVEL")
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value or "INFO").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    if _state["logging"]:
        return
    logging.basicConfig(level=_level(level), format=LOG_FORMAT)
    _state["logging"] = True
    _announce_env()


def get_logger(name: str = "smsbridge") -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def _announce_env() -> None:
    if _state["env_logged"]:
        return
    _state["env_logged"] = True
    logging.getLogger("env").info(
        "Startup env: eloqua_client=%s airtable_key=%s airtable_base=%s redis=%s in_memory=%s",
        mask_value(os.getenv("ELOQUA_CLIENT_ID")),
        mask_value(os.getenv("AIRTABLE_API_KEY")),
        os.getenv("AIRTABLE_BASE_ID") or "<missing>",
        bool(os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")),
        os.getenv("SMS_FORCE_IN_MEMORY", "0"),
    )


# ── time ─────────────────────────────────────────
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return iso(utc_now())  # type: ignore[return-value]


def parse_dt(v: Any) -> Optional[datetime]:
    if not v:
        return None
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(v).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def epoch_ms(dt: Optional[datetime] = None) -> int:
    return int((dt or utc_now()).timestamp() * 1000)


# ── strings ──────────────────────────────────────
def only_digits(value: str | None) -> str:
    return _NON_DIGITS.sub("", "" if value is None else str(value))


def truncate(value: Any, limit: int) -> str:
    text = "" if value is None else str(value)
    return text if len(text) <= limit else text[:limit]


# ── retries ──────────────────────────────────────
async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    max_delay: Optional[float] = None,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry an async callable with capped exponential backoff."""
    log = logger or get_logger(__name__)
    caught = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return await func()
        except caught as exc:
            if attempt >= retries or (should_retry is not None and not should_retry(exc)):
                if attempt:
                    log.error("Async retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            if max_delay is not None:
                delay = min(delay, max_delay)
            log.warning("Retryable async error (%s/%s): %s, sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1
