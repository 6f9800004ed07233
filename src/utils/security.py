from __future__ import annotations

import os
import time
from collections import defaultdict, deque
from typing import Deque, Dict

from fastapi import HTTPException

from src.utils.errors import ValidationError


def verify_api_key(provided_key: str | None) -> None:
    """Check the shared API token when ``API_AUTH_TOKEN`` is configured."""

    expected = (os.getenv("API_AUTH_TOKEN") or "").strip()
    if not expected:
        return
    if provided_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API token")


def require_user_id(user_id: str | None) -> str:
    value = (user_id or "").strip()
    if not value:
        raise ValidationError("User id is required")
    return value


class RateLimiter:
    """Sliding-window limiter keyed by caller identity and route template."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = window_seconds
        self.calls: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = time.time()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window:
            return
        cutoff = now - self.window
        for key in [key for key, bucket in self.calls.items() if not bucket or bucket[-1] <= cutoff]:
            del self.calls[key]
        self._last_sweep = now

    def allow(self, client_id: str) -> None:
        now = time.time()
        self._sweep(now)
        bucket = self.calls[client_id]
        while bucket and bucket[0] <= now - self.window:
            bucket.popleft()
        if len(bucket) >= self.limit:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")
        bucket.append(now)


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        limit = int(os.getenv("API_RATE_LIMIT", "60"))
        window = int(os.getenv("API_RATE_WINDOW", "60"))
        _rate_limiter = RateLimiter(limit=limit, window_seconds=window)
    return _rate_limiter
