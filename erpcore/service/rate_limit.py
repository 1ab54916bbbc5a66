from __future__ import annotations

import math
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

from erpcore.logging import get_logger
from erpcore.service.audit import AuditLog, RequestMeta
from erpcore.service.errors import RateLimitError

logger = get_logger(__name__)


class RateCounter(Protocol):
    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one attempt; return (attempts in the current window, seconds left)."""
        ...


class InMemoryRateCounter:
    """Fixed-window counter for a single process."""

    def __init__(self) -> None:
        self._state_lock = threading.Lock()
        self._windows: Dict[str, Tuple[int, float]] = {}

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = time.monotonic()
        with self._state_lock:
            count, window_end = self._windows.get(key, (0, 0.0))
            if window_end <= now:
                count, window_end = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, window_end)
            if len(self._windows) > 10_000:
                self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        return count, max(1, math.ceil(window_end - now))


class RedisRateCounter:
    """Fixed-window counter shared by every instance through Redis."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, int]:
        return await self.cache.hit_window(key, window_seconds)


class AuthRateLimiter:
    """Per-IP, per-endpoint attempt limit for the credential-checking routes.

    Every attempt counts whether it succeeds or not.
    """

    def __init__(
        self,
        counter: RateCounter,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.counter = counter
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.audit = audit

    async def check(
        self,
        scope: str,
        ip_address: Optional[str],
        *,
        meta: Optional[RequestMeta] = None,
    ) -> None:
        """Count an attempt; raises RateLimitError once the window is exhausted."""
        key = f"{scope}:{ip_address or 'unknown'}"
        count, retry_after = await self.counter.hit(key, self.window_seconds)
        if count <= self.max_attempts:
            return
        logger.warning(
            "auth_rate_limit_exceeded",
            scope=scope,
            ip_address=ip_address,
            attempts=count,
            retry_after=retry_after,
        )
        if self.audit:
            self.audit.record(
                "AUTH_RATE_LIMIT_EXCEEDED",
                meta=meta,
                scope=scope,
                attempts=count,
            )
        raise RateLimitError(
            "Too many attempts, please try again later",
            retry_after=retry_after,
            detail={"retry_after": retry_after},
        )
