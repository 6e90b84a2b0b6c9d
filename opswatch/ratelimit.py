from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
import time
from typing import Callable

from .errors import RateLimited


@dataclass
class _Window:
    started_at: float
    count: int


@dataclass
class _Stripe:
    lock: Lock = field(default_factory=Lock)
    windows: dict[str, _Window] = field(default_factory=dict)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float


class FixedWindowRateLimiter:
    """Counts requests per client key in non-overlapping windows.

    A window opens on the first request from a key (or the first one after the
    previous window expired) and admits up to ``max_requests``. Rejected
    requests still count and never reset the window, so a client hammering the
    limit waits for the natural expiry. Keys are spread over lock stripes, each
    owning its own window map, so unrelated clients rarely contend.

    A stripe never holds more than ``max_windows_per_stripe`` windows. When it
    is full, expired windows go first; if none has expired, the window that
    started earliest is dropped to make room.
    """

    def __init__(
        self,
        *,
        max_requests: int = 500,
        window_sec: float = 60.0,
        stripes: int = 16,
        max_windows_per_stripe: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_sec <= 0.0:
            raise ValueError("window_sec must be positive")
        self.max_requests = int(max_requests)
        self.window_sec = float(window_sec)
        self._max_windows = max(1, int(max_windows_per_stripe))
        self._stripes = [_Stripe() for _ in range(max(1, int(stripes)))]
        self._clock = clock

    def _stripe_for(self, key: str) -> _Stripe:
        return self._stripes[hash(key) % len(self._stripes)]

    def _evict_expired_locked(self, stripe: _Stripe, now: float) -> None:
        stale = [k for k, w in stripe.windows.items() if now - w.started_at >= self.window_sec]
        for key in stale:
            stripe.windows.pop(key, None)

    def hit(self, key: str) -> RateDecision:
        now = self._clock()
        stripe = self._stripe_for(key)
        with stripe.lock:
            window = stripe.windows.get(key)
            if window is None or now - window.started_at >= self.window_sec:
                if window is None and len(stripe.windows) >= self._max_windows:
                    self._evict_expired_locked(stripe, now)
                    if len(stripe.windows) >= self._max_windows:
                        oldest = min(stripe.windows, key=lambda k: stripe.windows[k].started_at)
                        del stripe.windows[oldest]
                window = _Window(started_at=now, count=1)
                stripe.windows[key] = window
            else:
                window.count += 1
            count = window.count
            reset_after = max(0.0, self.window_sec - (now - window.started_at))

        return RateDecision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_after=reset_after,
        )

    def check(self, key: str) -> RateDecision:
        decision = self.hit(key)
        if not decision.allowed:
            raise RateLimited(retry_after=decision.reset_after)
        return decision

    def tracked_keys(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                total += len(stripe.windows)
        return total
