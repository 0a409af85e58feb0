from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: float


class RateLimiter:
    """Sliding window limiter keyed by command and Telegram user.

    Keys whose newest call has left the window are dropped on a sweep that
    runs at most once per period, so idle users do not accumulate.
    """

    def __init__(
        self,
        max_calls: int,
        period_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._calls)

    def allow(self, key: str) -> RateLimitResult:
        now = self._clock()
        if now - self._last_sweep >= self.period_seconds:
            self._sweep(now)
        window = self._calls.setdefault(key, deque())
        while window and now - window[0] >= self.period_seconds:
            window.popleft()
        if len(window) >= self.max_calls:
            return RateLimitResult(False, max(self.period_seconds - (now - window[0]), 0))
        window.append(now)
        return RateLimitResult(True, 0)

    def _sweep(self, now: float) -> None:
        stale = [key for key, window in self._calls.items() if not window or now - window[-1] >= self.period_seconds]
        for key in stale:
            del self._calls[key]
        self._last_sweep = now


# /draw and /exclude run a feasibility search, keep them cheap to abuse
draw_limiter = RateLimiter(max_calls=3, period_seconds=30)
command_limiter = RateLimiter(max_calls=5, period_seconds=10)
