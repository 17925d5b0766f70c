"""Per-client admission control for build/test requests.

A fixed window counter: each client gets ``max_requests`` invocations per
``window_seconds``; the window restarts on the first request after it has
elapsed. Rejected requests never reach the orchestrator, so they cost no
workspace or process.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .config import RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS


Clock = Callable[[], float]


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    remaining: int
    retry_after: float


class InMemoryCounterStore:
    """Process-local window counters keyed by client id."""

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: float, window_seconds: float, limit: int) -> Tuple[bool, int, float]:
        """Count one attempt for key. Returns (allowed, count, window_start).

        The check and the increment happen under one lock; rejected attempts
        are not counted.
        """
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= window_seconds:
                start, count = now, 0
            if count >= limit:
                return False, count, start
            count += 1
            self._windows[key] = (start, count)
            return True, count, start

    def prune(self, now: float, window_seconds: float) -> int:
        with self._lock:
            expired = [k for k, (start, _) in self._windows.items() if now - start >= window_seconds]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class AdmissionController:
    def __init__(
        self,
        store: InMemoryCounterStore | None = None,
        max_requests: int = RATE_LIMIT_MAX,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.store = store if store is not None else InMemoryCounterStore()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._last_prune = clock()

    def admit(self, client_id: str) -> AdmissionDecision:
        now = self.clock()
        self._maybe_prune(now)
        allowed, count, start = self.store.hit(client_id, now, self.window_seconds, self.max_requests)
        retry_after = 0.0 if allowed else max(0.0, start + self.window_seconds - now)
        return AdmissionDecision(
            allowed=allowed,
            remaining=max(0, self.max_requests - count),
            retry_after=retry_after,
        )

    def retry_after_header(self, retry_after: float) -> str:
        return str(max(1, math.ceil(retry_after)))

    def _maybe_prune(self, now: float) -> None:
        # Keep memory bounded by the number of clients seen in one window.
        if now - self._last_prune >= self.window_seconds:
            self._last_prune = now
            self.store.prune(now, self.window_seconds)
