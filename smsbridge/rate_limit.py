"""
Sliding-window request limiter keyed by client IP.

Redis sorted sets when REDIS_URL is configured, an in-process deque per key
otherwise (or when Redis errors). Idle keys are dropped from memory once
their window has passed.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from typing import Deque, Dict, Optional

import redis as _redis

from smsbridge.config import Settings, settings
from smsbridge.datastore import run_io
from smsbridge.runtime import get_logger

logger = get_logger("rate_limit")

KEY_PREFIX = "smsbridge:rl"


class RateLimiter:
    def __init__(self, limit: int, window_sec: float, redis_client: Optional["_redis.Redis"] = None) -> None:
        self.limit = limit
        self.window = window_sec
        self.r = redis_client
        self._mem: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "RateLimiter":
        cfg = cfg or settings()
        client = None
        if cfg.REDIS_URL:
            try:
                client = _redis.from_url(cfg.REDIS_URL, ssl=cfg.REDIS_TLS, decode_responses=True, socket_timeout=3)
            except (ValueError, _redis.RedisError) as exc:
                logger.warning("Redis unavailable for rate limiting, using memory: %s", exc)
        return cls(cfg.RATE_LIMIT_REQUESTS, cfg.RATE_LIMIT_WINDOW_SEC, client)

    async def check(self, key: str) -> bool:
        """``allow`` for async callers; Redis round trips run off the event loop."""
        if self.r is None:
            return self._allow_memory(key, time.time())
        return await run_io(self.allow, key)

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        """Record one request for ``key``; False once the window is full."""
        now = time.time() if now is None else now
        if self.r is not None:
            try:
                return self._allow_redis(key, now)
            except _redis.RedisError as exc:
                logger.warning("Redis rate limit check failed, using memory: %s", exc)
        return self._allow_memory(key, now)

    def _allow_redis(self, key: str, now: float) -> bool:
        rkey = f"{KEY_PREFIX}:{key}"
        pipe = self.r.pipeline()
        pipe.zremrangebyscore(rkey, 0, now - self.window)
        pipe.zcard(rkey)
        _, count = pipe.execute()
        if int(count) >= self.limit:
            return False
        pipe = self.r.pipeline()
        pipe.zadd(rkey, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(rkey, int(self.window) + 1)
        pipe.execute()
        return True

    def _allow_memory(self, key: str, now: float) -> bool:
        cutoff = now - self.window
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._drop_idle(cutoff)
                self._last_sweep = now
            hits = self._mem.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def _drop_idle(self, cutoff: float) -> None:
        idle = [key for key, hits in self._mem.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._mem[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._mem)

    def reset(self) -> None:
        with self._lock:
            self._mem.clear()
            self._last_sweep = 0.0
