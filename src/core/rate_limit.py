"""Fixed-window rate limiting for client IPs and per-user generation requests."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
import time
from typing import Dict, Protocol, Tuple

from redis.exceptions import RedisError

from src.core.config import get_settings
from src.storage.redis_client import get_client


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiter(Protocol):
    def check(self, *, key: str) -> RateLimitDecision:
        """Count one hit for ``key`` and return the decision."""


def _window(window_seconds: int) -> Tuple[int, int]:
    now = int(time.time())
    return now // window_seconds, window_seconds - (now % window_seconds)


class InMemoryRateLimiter:
    def __init__(self, *, scope: str, requests_per_window: int, window_seconds: int) -> None:
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._scope = scope
        self._limit = requests_per_window
        self._window = window_seconds
        self._lock = Lock()
        self._store: Dict[Tuple[str, int], int] = {}

    def check(self, *, key: str) -> RateLimitDecision:
        window_id, reset_seconds = _window(self._window)
        with self._lock:
            # Keep current and previous windows only.
            stale_keys = [item for item in self._store if item[1] < window_id - 1]
            for stale in stale_keys:
                self._store.pop(stale, None)

            count = int(self._store.get((key, window_id), 0)) + 1
            self._store[(key, window_id)] = count

        return RateLimitDecision(
            allowed=count <= self._limit,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            reset_seconds=reset_seconds,
        )


class RedisRateLimiter:
    """Shared counter across instances; fails open when Redis is unreachable."""

    def __init__(self, *, scope: str, requests_per_window: int, window_seconds: int) -> None:
        if requests_per_window <= 0:
            raise ValueError("requests_per_window must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self._scope = scope
        self._limit = requests_per_window
        self._window = window_seconds
        self._redis = get_client()

    def check(self, *, key: str) -> RateLimitDecision:
        window_id, reset_seconds = _window(self._window)
        redis_key = f"asmrgen:ratelimit:{self._scope}:{key}:{window_id}"

        try:
            count = int(self._redis.incr(redis_key))
            if count == 1:
                self._redis.expire(redis_key, self._window + 1)
        except RedisError:
            return RateLimitDecision(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                reset_seconds=reset_seconds,
            )

        return RateLimitDecision(
            allowed=count <= self._limit,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            reset_seconds=reset_seconds,
        )


def _build_limiter(*, scope: str, requests_per_window: int, window_seconds: int) -> RateLimiter:
    if get_settings().env.lower() in {"prod", "production"}:
        return RedisRateLimiter(scope=scope, requests_per_window=requests_per_window, window_seconds=window_seconds)
    return InMemoryRateLimiter(scope=scope, requests_per_window=requests_per_window, window_seconds=window_seconds)


@lru_cache(maxsize=1)
def get_ip_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return _build_limiter(
        scope="ip",
        requests_per_window=settings.ip_rate_limit_requests_per_window,
        window_seconds=settings.ip_rate_limit_window_seconds,
    )


@lru_cache(maxsize=1)
def get_generation_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return _build_limiter(
        scope="generation",
        requests_per_window=settings.generation_rate_limit_per_window,
        window_seconds=settings.generation_rate_limit_window_seconds,
    )


def reset_rate_limiters() -> None:
    get_ip_rate_limiter.cache_clear()
    get_generation_rate_limiter.cache_clear()
