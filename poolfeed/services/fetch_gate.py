# poolfeed/services/fetch_gate.py

"""Admission control for outbound network calls.

Combines a global concurrency bound (parallel scraping against one
marketplace trips anti-bot defences) with per-key sliding-window rate
budgets (shared endpoints must not become an amplification vector).
"""

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from poolfeed.config.settings import Settings
from poolfeed.errors import GateTimeoutError

logger = logging.getLogger("poolfeed.gate")


@dataclass
class RateLimitStatus:
    """Outcome of a single rate-limit check."""

    limited: bool
    remaining: int
    limit: int
    reset_seconds: float

    def headers(self) -> dict[str, str]:
        """Render as plain string-valued response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(max(0, round(self.reset_seconds))),
        }


@dataclass
class RateBucket:
    """Recent request timestamps for one caller-supplied key."""

    key: str
    timestamps: deque[float] = field(
        default_factory=lambda: deque[float]()
    )
    window: float = 0.0

    def prune(self, now: float, window: float) -> None:
        """Drop every timestamp older than ``now - window``."""
        self.window = window
        cutoff = now - window
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def reset_in(self, now: float, window: float) -> float:
        """Seconds until the oldest retained timestamp ages out."""
        if not self.timestamps:
            return 0.0
        return max(0.0, self.timestamps[0] + window - now)

    def __len__(self) -> int:
        return len(self.timestamps)


class FetchGate:
    """Bounds in-flight outbound calls and enforces per-key budgets.

    Buckets are created lazily on first use. A bucket whose newest
    timestamp has left its window is dropped by a periodic sweep, so
    one-off keys (client addresses) do not accumulate. Each gate
    instance owns its state so tests can build isolated ones.
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        wait_ceiling: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float | None = None,
    ) -> None:
        self.max_concurrent = max_concurrent or Settings.MAX_CONCURRENT
        self._wait_ceiling = (
            wait_ceiling
            if wait_ceiling is not None
            else Settings.GATE_WAIT_CEILING
        )
        self._clock = clock
        self._sweep_interval = (
            sweep_interval
            if sweep_interval is not None
            else Settings.GATE_SWEEP_INTERVAL
        )
        self._last_sweep = clock()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._buckets: dict[str, RateBucket] = {}
        self._budgets: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._in_flight = 0
        self._high_water = 0

    # ── Introspection ────────────────────────────────────

    @property
    def in_flight(self) -> int:
        """Permits currently held."""
        return self._in_flight

    @property
    def high_water(self) -> int:
        """Largest number of permits ever held at once."""
        return self._high_water

    @property
    def bucket_count(self) -> int:
        """Rate buckets currently held in memory."""
        return len(self._buckets)

    # ── Rate budgets ─────────────────────────────────────

    def set_budget(self, key: str, limit: int, window_ms: int) -> None:
        """Attach a rate budget that ``acquire(key)`` will honour."""
        self._budgets[key] = (limit, window_ms)

    def _sweep(self, now: float) -> None:
        """Drop buckets with nothing left inside their window.

        Called with ``self._lock`` held.
        """
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        idle = [
            key
            for key, bucket in self._buckets.items()
            if not bucket.timestamps
            or bucket.timestamps[-1] <= now - bucket.window
        ]
        for key in idle:
            del self._buckets[key]
        if idle:
            logger.debug(
                "Swept %d idle rate buckets (%d left)",
                len(idle), len(self._buckets),
            )

    def _bucket(self, key: str, now: float) -> RateBucket:
        self._sweep(now)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateBucket(key=key)
            self._buckets[key] = bucket
        return bucket

    def rate_limited(
        self, key: str, limit: int, window_ms: int,
    ) -> RateLimitStatus:
        """Record an attempt for *key* and report whether it is over budget.

        Sliding window: prune timestamps older than the window, append
        now, compare the retained count against *limit*.
        """
        window = window_ms / 1000
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, now)
            bucket.prune(now, window)
            bucket.timestamps.append(now)
            count = len(bucket)
            reset = bucket.reset_in(now, window)
        limited = count > limit
        if limited:
            logger.debug(
                "Rate limit hit for %s (%d/%d in %dms)",
                key, count, limit, window_ms,
            )
        return RateLimitStatus(
            limited=limited,
            remaining=max(0, limit - count),
            limit=limit,
            reset_seconds=reset,
        )

    async def _wait_for_budget(
        self, key: str, limit: int, window_ms: int,
    ) -> None:
        """Block until *key* has room in its current window, then record."""
        window = window_ms / 1000
        while True:
            with self._lock:
                now = self._clock()
                bucket = self._bucket(key, now)
                bucket.prune(now, window)
                if len(bucket) < limit:
                    bucket.timestamps.append(now)
                    return
                delay = bucket.reset_in(now, window)
            logger.debug(
                "Budget for %s exhausted, waiting %.2fs", key, delay,
            )
            await asyncio.sleep(max(delay, 0.01))

    async def _admit(self, key: str | None) -> None:
        if key is not None and key in self._budgets:
            limit, window_ms = self._budgets[key]
            await self._wait_for_budget(key, limit, window_ms)
        await self._semaphore.acquire()

    # ── Permits ──────────────────────────────────────────

    @asynccontextmanager
    async def acquire(self, key: str | None = None) -> AsyncIterator[None]:
        """Hold one outbound permit for the duration of the block.

        Raises :class:`GateTimeoutError` when the wait exceeds the
        configured ceiling. The permit is released on every exit path.
        """
        try:
            await asyncio.wait_for(
                self._admit(key), timeout=self._wait_ceiling,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Fetch permit wait exceeded %.1fs (key=%s)",
                self._wait_ceiling,
                key,
            )
            raise GateTimeoutError(
                f"Timed out waiting for fetch permit ({key or 'global'})",
                source=key or "",
            ) from exc

        self._in_flight += 1
        self._high_water = max(self._high_water, self._in_flight)
        try:
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()
