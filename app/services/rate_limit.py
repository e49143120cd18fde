from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterable, Protocol

import redis

from app.core.config import settings

_LOG = logging.getLogger("app.rate_limit")


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    current_value: int


class RateLimiter(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    def __init__(self):
        self._data: dict[str, tuple[int, datetime]] = {}
        self._lock = Lock()

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = datetime.now(timezone.utc)
        with self._lock:
            count, expires_at = self._data.get(key, (0, now))
            if expires_at <= now:
                count = 0
                expires_at = now + timedelta(seconds=max(int(window_seconds), 1))
            count += 1
            self._data[key] = (count, expires_at)
            # expired windows
            for stale in [k for k, (_, exp) in self._data.items() if exp <= now]:
                del self._data[stale]
            retry_after = max(0, int((expires_at - now).total_seconds()))
        return RateLimitResult(allowed=count <= limit, retry_after_seconds=retry_after, current_value=count)


class RedisRateLimiter:
    def __init__(self, client: redis.Redis):
        self.client = client

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        window = int(max(window_seconds, 1))
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window, nx=True)
        pipe.ttl(key)
        count, _, ttl = pipe.execute()
        ttl = int(ttl)
        if ttl < 0:
            ttl = window
        return RateLimitResult(allowed=int(count) <= limit, retry_after_seconds=ttl, current_value=int(count))


def hash_key_part(value: str | None) -> str:
    raw = str(value or "").strip().lower()
    if not raw:
        return "-"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


def otp_rate_limit_keys(action: str, *, purpose: str, client_ip: str | None, email: str | None) -> list[str]:
    keys = [f"otp:{action}:ip:{hash_key_part(client_ip)}:purpose:{purpose}"]
    if email:
        keys.append(f"otp:{action}:email:{hash_key_part(email)}:purpose:{purpose}")
    return keys


def first_denied(
    limiter: RateLimiter, keys: Iterable[str], *, limit: int, window_seconds: int
) -> RateLimitResult | None:
    for key in keys:
        result = limiter.hit(key, limit=limit, window_seconds=window_seconds)
        if not result.allowed:
            return result
    return None


_cached_limiter: RateLimiter | None = None


def _build_limiter() -> RateLimiter:
    url = str(settings.REDIS_URL or "").strip()
    if not url:
        return InMemoryRateLimiter()
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=0.4,
            socket_connect_timeout=0.4,
        )
        client.ping()
        return RedisRateLimiter(client)
    except redis.RedisError:
        _LOG.warning("Redis limiter unavailable; fallback to in-memory limiter")
        return InMemoryRateLimiter()


def get_rate_limiter() -> RateLimiter:
    global _cached_limiter
    if _cached_limiter is None:
        _cached_limiter = _build_limiter()
    return _cached_limiter


def reset_rate_limiter_for_tests() -> None:
    global _cached_limiter
    _cached_limiter = None
