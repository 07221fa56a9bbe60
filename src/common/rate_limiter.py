from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Tuple

from .expiring import ExpiringMap


class RateLimitError(RuntimeError):
    """Raised by `acquire` when the identity has exhausted its current window."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded; retry after {retry_after}s")
        self.retry_after = retry_after


@dataclass
class _WindowConfig:
    max_requests: int
    window_seconds: float


@dataclass
class RateWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[int] = None  # whole seconds, only set when denied


class FixedWindowRateLimiter:
    """
    A thread-safe, per-identity fixed-window request counter.

    - The first request (or the first after `reset_at` has passed) opens a new
      window: ``count = 1``, ``reset_at = now + window_seconds``.
    - Inside the window each request increments the count; once the count
      exceeds `max_requests` the request is denied with a `retry_after`.
    - Windows do not slide: a burst straddling a window boundary can admit up
      to ``2 * max_requests`` requests in quick succession.

    Windows live in an `ExpiringMap`, so idle identities disappear on sweep.
    Not a distributed limiter.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._cfg = _WindowConfig(max_requests=max_requests, window_seconds=window_seconds)
        self._windows: ExpiringMap[Hashable, RateWindow] = ExpiringMap(clock=clock)
        self._clock = clock

    @property
    def max_requests(self) -> int:
        return self._cfg.max_requests

    @property
    def windows(self) -> ExpiringMap[Hashable, RateWindow]:
        return self._windows

    def check(self, identity: Hashable) -> RateLimitResult:
        """Count one request for `identity` and report whether it is allowed."""
        now = self._clock()

        def _advance(window: Optional[RateWindow]) -> Tuple[RateWindow, float]:
            # The map hides windows whose reset_at has passed, so None means "open a new one"
            if window is None:
                window = RateWindow(count=1, reset_at=now + self._cfg.window_seconds)
            else:
                window = RateWindow(count=window.count + 1, reset_at=window.reset_at)
            return window, window.reset_at

        window = self._windows.update(identity, _advance)
        if window.count > self._cfg.max_requests:
            retry_after = max(0, math.ceil(window.reset_at - now))
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitResult(allowed=True, remaining=self._cfg.max_requests - window.count)

    def acquire(self, identity: Hashable) -> None:
        """Non-blocking variant of `check`; raises RateLimitError when denied."""
        result = self.check(identity)
        if not result.allowed:
            raise RateLimitError(result.retry_after or 0)

    def remaining(self, identity: Hashable) -> int:
        """Requests left in the current window without counting one."""
        window = self._windows.get(identity)
        if window is None:
            return self._cfg.max_requests
        return max(0, self._cfg.max_requests - window.count)

    def reset(self, identity: Hashable) -> None:
        self._windows.pop(identity)
