"""
Per-client in-memory rate limiter for the public send routes.

**Why rate limiting:**
- Every accepted request becomes a WhatsApp send; a runaway client would fill the queue
  and push the account towards a ban long before pacing can help.
- Admin routes are not limited (the UI polls them).

Sliding window keyed by client (API key when present, else remote address). Not shared
across processes; the relay runs as a single instance per account anyway.
"""

from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock
from typing import Callable

from config import RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_MS


class SlidingWindowLimiter:
    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX,
        window_ms: int = RATE_LIMIT_WINDOW_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_sec = window_ms / 1000
        self._clock = clock
        self._lock = Lock()
        self._store: dict[str, list[float]] = defaultdict(list)

    def check(self, client_id: str) -> tuple[bool, float | None]:
        """
        Returns (allowed, retry_after_seconds).
        If allowed is False, retry_after_seconds is the suggested wait.
        """
        now = self._clock()
        cutoff = now - self.window_sec
        with self._lock:
            times = self._store[client_id]
            times[:] = [t for t in times if t > cutoff]
            if len(times) >= self.max_requests:
                oldest = min(times)
                retry_after = max(0.0, self.window_sec - (now - oldest))
                return False, round(retry_after, 1)
            times.append(now)
        return True, None

    def reset(self) -> None:
        with self._lock:
            self._store.clear()
