"""
RateLimiter — per-user and per-tenant call ceilings in fixed UTC windows.

Windows are bucketed by wall-clock minute rounded down to the window size
(10 minutes by default), keyed "YYYY-MM-DDTHH:MM":

    2026-03-01T14:37:22Z → "2026-03-01T14:30"
    2026-03-01T14:59:59Z → "2026-03-01T14:50"

check_and_increment() counts the call and raises RateLimitExceededError when
the user or tenant counter for the current window goes over its ceiling. The
user ceiling is checked first. Rejected calls are not counted.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import RateLimitExceededError
from .models import utcnow

logger = logging.getLogger("ai_governance.rate_limiter")

DEFAULT_PER_USER = 30
DEFAULT_PER_TENANT = 200
DEFAULT_WINDOW_MINUTES = 10


def compute_window_key(now: datetime, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> str:
    now = now.astimezone(timezone.utc)
    minute = (now.minute // window_minutes) * window_minutes
    return f"{now:%Y-%m-%dT%H}:{minute:02d}"


class RateLimiter:

    def __init__(
        self,
        per_user: int = DEFAULT_PER_USER,
        per_tenant: int = DEFAULT_PER_TENANT,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        clock: Callable = utcnow,
    ) -> None:
        self.per_user = per_user
        self.per_tenant = per_tenant
        self.window_minutes = window_minutes
        self._clock = clock
        self._lock = threading.Lock()
        self._window: Optional[str] = None
        self._user_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._tenant_counts: dict[str, int] = defaultdict(int)

    def _roll(self, window_key: str) -> None:
        if window_key != self._window:
            self._window = window_key
            self._user_counts.clear()
            self._tenant_counts.clear()

    def check_and_increment(self, tenant_id: str, user_id: Optional[str] = None) -> str:
        """Count one call; returns the window key. Raises when over a ceiling."""
        window_key = compute_window_key(self._clock(), self.window_minutes)
        with self._lock:
            self._roll(window_key)
            if user_id is not None and self._user_counts[(tenant_id, user_id)] >= self.per_user:
                logger.warning("Rate limit (user) hit in window %s", window_key)
                raise RateLimitExceededError("user", window_key)
            if self._tenant_counts[tenant_id] >= self.per_tenant:
                logger.warning("Rate limit (tenant) hit for %s… in window %s",
                               tenant_id[:8], window_key)
                raise RateLimitExceededError("tenant", window_key)
            if user_id is not None:
                self._user_counts[(tenant_id, user_id)] += 1
            self._tenant_counts[tenant_id] += 1
        return window_key

    def usage(self, tenant_id: str, user_id: Optional[str] = None) -> dict[str, int]:
        window_key = compute_window_key(self._clock(), self.window_minutes)
        with self._lock:
            self._roll(window_key)
            return {
                "tenant": self._tenant_counts.get(tenant_id, 0),
                "user": self._user_counts.get((tenant_id, user_id), 0) if user_id else 0,
            }
