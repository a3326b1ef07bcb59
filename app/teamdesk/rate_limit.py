"""
Fixed-window request counters keyed by client identity.

Each limiter owns its own store; create_app() builds one per policy and keeps
them in app.extensions["rate_limiters"] so nothing is shared process-wide.
"""
from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from flask import Flask, current_app

from app.teamdesk.audit import client_ip
from app.teamdesk.errors import RateLimitedError


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at - time.time()) + 1)


class FixedWindowRateLimiter:
    def __init__(self, *, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, tuple[int, float]] = {}  # identifier -> (count, reset_at)
        self._lock = threading.Lock()

    def _cleanup(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._store.items() if reset_at <= now]
        for key in expired:
            del self._store[key]

    def is_allowed(self, identifier: str) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            self._cleanup(now)

            count, reset_at = self._store.get(identifier, (0, now + self.window_seconds))
            if count >= self.max_requests:
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

            count += 1
            self._store[identifier] = (count, reset_at)
            return RateLimitResult(allowed=True, remaining=self.max_requests - count, reset_at=reset_at)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._store.pop(identifier, None)


def init_rate_limiters(app: Flask) -> None:
    cfg = app.config
    app.extensions["rate_limiters"] = {
        "auth": FixedWindowRateLimiter(
            max_requests=cfg["AUTH_RATE_LIMIT_MAX"], window_seconds=cfg["AUTH_RATE_LIMIT_WINDOW"]
        ),
        "api": FixedWindowRateLimiter(
            max_requests=cfg["API_RATE_LIMIT_MAX"], window_seconds=cfg["API_RATE_LIMIT_WINDOW"]
        ),
        "user_action": FixedWindowRateLimiter(
            max_requests=cfg["ACTION_RATE_LIMIT_MAX"], window_seconds=cfg["ACTION_RATE_LIMIT_WINDOW"]
        ),
    }


def get_limiter(name: str) -> FixedWindowRateLimiter:
    return current_app.extensions["rate_limiters"][name]


def client_identifier() -> str:
    return client_ip() or "unknown"


def check_rate_limit(name: str, identifier: str | None = None) -> RateLimitResult:
    """Count one hit against limiter `name`; raise RateLimitedError once it is exhausted."""
    result = get_limiter(name).is_allowed(identifier or client_identifier())
    if not result.allowed:
        raise RateLimitedError(retry_after=result.retry_after)
    return result
