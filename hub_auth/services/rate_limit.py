from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Protocol

import redis

from hub_auth.core.config import settings
from hub_auth.core.errors import StorageError

_LOG = logging.getLogger("hub_auth.rate_limit")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_key_part(value: str | None) -> str:
    raw = str(value or "").strip()
    if not raw:
        return "-"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    current_value: int


class RateLimiter(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryRateLimiter:
    """Fixed-window counter. The window starts at the first hit."""

    def __init__(self, clock: Clock | None = None):
        self._data: dict[str, tuple[int, datetime]] = {}
        self._lock = Lock()
        self._clock = clock or _utcnow

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            count, expires_at = self._data.get(key, (0, now))
            if expires_at <= now:
                count = 0
                expires_at = now + timedelta(seconds=max(int(window_seconds), 1))
            count += 1
            self._data[key] = (count, expires_at)
            retry_after = max(0, int((expires_at - now).total_seconds() + 0.999))
        return RateLimitResult(allowed=count <= limit, retry_after_seconds=retry_after, current_value=count)

    def reset(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class RedisRateLimiter:
    def __init__(self, client: redis.Redis, *, prefix: str = "hub:rl:"):
        self.client = client
        self.prefix = prefix

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        full_key = f"{self.prefix}{key}"
        window = int(max(window_seconds, 1))
        try:
            count = int(self.client.incr(full_key))
            if count == 1:
                self.client.expire(full_key, window)
            ttl = int(self.client.ttl(full_key))
        except redis.RedisError as exc:
            _LOG.warning("Redis limiter call failed key=%s error=%s", key, exc)
            raise StorageError(f"Rate limiter unavailable: {exc}") from exc
        if ttl < 0:
            ttl = window
        return RateLimitResult(allowed=int(count) <= limit, retry_after_seconds=ttl, current_value=int(count))

    def reset(self, key: str) -> None:
        try:
            self.client.delete(f"{self.prefix}{key}")
        except redis.RedisError as exc:
            raise StorageError(f"Rate limiter unavailable: {exc}") from exc


_cached_limiter: RateLimiter | None = None


def build_redis_client(url: str | None = None) -> redis.Redis:
    client = redis.Redis.from_url(
        url or settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=0.4,
        socket_connect_timeout=0.4,
    )
    client.ping()
    return client


def _build_limiter() -> RateLimiter:
    try:
        return RedisRateLimiter(build_redis_client())
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
