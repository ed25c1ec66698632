# FILE: shopedge/ratelimit.py
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from .config import Settings

_logger = logging.getLogger(__name__)


class Tier(str, Enum):
    AUTH = "auth"
    API = "api"
    GENERAL = "general"


@dataclass(frozen=True)
class TierLimit:
    max_requests: int
    window_seconds: float


@dataclass
class RateWindow:
    count: int
    window_start: float
    reset_time: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float
    # Set when a new identity was refused because the key map is full.
    capacity_exhausted: bool = False


DEFAULT_LIMITS: Dict[Tier, TierLimit] = {
    Tier.AUTH: TierLimit(10, 15 * 60.0),
    Tier.API: TierLimit(100, 60.0),
    Tier.GENERAL: TierLimit(200, 60.0),
}


class RateLimiter:
    """
    Fixed-window request counter per (identity, tier).

    A window starts on the first request of a pair and lasts the tier's
    window duration; the pair is allowed while its count stays within the
    tier maximum. Expired windows are reclaimed lazily on access, by the
    periodic sweeper thread, and by a bounded partial sweep whenever a new
    key would exceed `max_tracked_keys`. If the partial sweep cannot make
    room the new key is refused (fail closed) rather than stored.

    All window mutations happen under one lock, so concurrent checks for
    the same pair never lose increments.
    """

    def __init__(
        self,
        limits: Optional[Mapping[Tier, TierLimit]] = None,
        *,
        max_tracked_keys: int = 10_000,
        evict_batch: int = 100,
        sweep_interval_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits: Dict[Tier, TierLimit] = dict(limits or DEFAULT_LIMITS)
        self.max_tracked_keys = int(max(1, max_tracked_keys))
        self.evict_batch = int(max(1, evict_batch))
        self.sweep_interval_s = float(sweep_interval_s)
        self._clock = clock
        self._windows: Dict[Tuple[str, Tier], RateWindow] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> "RateLimiter":
        limits = {
            Tier.AUTH: TierLimit(settings.rate_auth_max, settings.rate_auth_window_s),
            Tier.API: TierLimit(settings.rate_api_max, settings.rate_api_window_s),
            Tier.GENERAL: TierLimit(settings.rate_general_max, settings.rate_general_window_s),
        }
        return cls(
            limits,
            max_tracked_keys=settings.rate_max_tracked_keys,
            evict_batch=settings.rate_evict_batch,
            sweep_interval_s=settings.rate_sweep_interval_s,
            clock=clock,
        )

    # ------------- core -------------

    def now(self) -> float:
        return self._clock()

    def _limit(self, tier: Tier) -> TierLimit:
        return self.limits.get(tier) or self.limits[Tier.GENERAL]

    def check(self, identity: str, tier: Tier = Tier.GENERAL) -> RateLimitResult:
        limit = self._limit(tier)
        key = (identity or "unknown", tier)
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now > window.reset_time:
                if window is None and len(self._windows) >= self.max_tracked_keys:
                    self._evict_expired_locked(now, self.evict_batch)
                    if len(self._windows) >= self.max_tracked_keys:
                        _logger.warning(
                            "rate limiter key cap reached (%d); refusing new identity",
                            self.max_tracked_keys,
                        )
                        return RateLimitResult(
                            allowed=False,
                            remaining=0,
                            reset_time=now + limit.window_seconds,
                            capacity_exhausted=True,
                        )
                window = RateWindow(count=1, window_start=now, reset_time=now + limit.window_seconds)
                self._windows[key] = window
            else:
                window.count += 1
            count, reset_time = window.count, window.reset_time

        return RateLimitResult(
            allowed=count <= limit.max_requests,
            remaining=max(0, limit.max_requests - count),
            reset_time=reset_time,
        )

    def status(self, identity: str, tier: Tier = Tier.GENERAL) -> RateWindow:
        """Current window for a pair, without counting a request."""
        limit = self._limit(tier)
        with self._lock:
            now = self._clock()
            window = self._windows.get((identity or "unknown", tier))
            if window is None or now > window.reset_time:
                return RateWindow(count=0, window_start=now, reset_time=now + limit.window_seconds)
            return RateWindow(window.count, window.window_start, window.reset_time)

    def retry_after_seconds(self, result: RateLimitResult) -> int:
        return max(1, int(math.ceil(result.reset_time - self._clock())))

    # ------------- eviction -------------

    def _evict_expired_locked(self, now: float, budget: Optional[int] = None) -> int:
        stale = []
        for key, window in self._windows.items():
            if now > window.reset_time:
                stale.append(key)
                if budget is not None and len(stale) >= budget:
                    break
        for key in stale:
            del self._windows[key]
        return len(stale)

    def sweep(self) -> int:
        """Remove every expired window; returns the number evicted."""
        with self._lock:
            evicted = self._evict_expired_locked(self._clock())
        if evicted:
            _logger.debug("rate limiter sweep evicted %d windows", evicted)
        return evicted

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    # ------------- background sweeper -------------

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval_s):
            try:
                self.sweep()
            except Exception:
                _logger.exception("rate limiter sweep failed")

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="shopedge-ratelimit-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None


__all__ = ["Tier", "TierLimit", "RateWindow", "RateLimitResult", "RateLimiter", "DEFAULT_LIMITS"]
