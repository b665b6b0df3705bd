# tests/test_fetch_gate.py

"""Tests for FetchGate concurrency bounding and rate budgets."""

import asyncio
import unittest

from poolfeed.errors import GateTimeoutError, TransientFetchError
from poolfeed.services.fetch_gate import FetchGate, RateBucket


class _FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimited(unittest.TestCase):
    """Sliding-window rate checks."""

    def setUp(self) -> None:
        self.clock = _FakeClock()
        self.gate = FetchGate(max_concurrent=6, clock=self.clock)

    def test_fourth_call_in_window_is_limited(self) -> None:
        """limit=3 / 1000ms: only the 4th call within 100ms is limited."""
        results = []
        for _ in range(4):
            results.append(self.gate.rate_limited("ip-1", 3, 1000).limited)
            self.clock.advance(0.025)
        self.assertEqual(results, [False, False, False, True])

    def test_call_after_window_is_not_limited(self) -> None:
        """Once the window passes, the bucket has room again."""
        for _ in range(4):
            self.gate.rate_limited("ip-1", 3, 1000)
        self.clock.advance(1.5)
        status = self.gate.rate_limited("ip-1", 3, 1000)
        self.assertFalse(status.limited)
        self.assertEqual(status.remaining, 2)

    def test_keys_are_independent(self) -> None:
        """Exhausting one key leaves another untouched."""
        for _ in range(4):
            self.gate.rate_limited("ip-1", 3, 1000)
        self.assertFalse(self.gate.rate_limited("ip-2", 3, 1000).limited)

    def test_remaining_counts_down(self) -> None:
        """Remaining budget decreases and floors at zero."""
        remaining = [
            self.gate.rate_limited("k", 2, 1000).remaining
            for _ in range(4)
        ]
        self.assertEqual(remaining, [1, 0, 0, 0])

    def test_headers_are_strings(self) -> None:
        """Rate-limit headers are plain strings."""
        headers = self.gate.rate_limited("k", 5, 60_000).headers()
        self.assertEqual(headers["X-RateLimit-Limit"], "5")
        self.assertEqual(headers["X-RateLimit-Remaining"], "4")
        self.assertEqual(headers["X-RateLimit-Reset"], "60")

    def test_idle_buckets_are_swept(self) -> None:
        """One-off keys do not pile up once their windows have passed."""
        for i in range(5000):
            self.gate.rate_limited(f"10.0.{i // 256}.{i % 256}", 3, 1000)
        self.assertEqual(self.gate.bucket_count, 5000)

        self.clock.advance(3600)
        self.gate.rate_limited("10.9.9.9", 3, 1000)

        self.assertEqual(self.gate.bucket_count, 1)

    def test_sweep_keeps_buckets_inside_their_window(self) -> None:
        self.gate.rate_limited("slow", 3, 600_000)
        self.gate.rate_limited("fast", 3, 1000)
        self.clock.advance(120)
        self.gate.rate_limited("other", 3, 1000)

        self.assertEqual(self.gate.bucket_count, 2)
        self.assertEqual(self.gate.rate_limited("slow", 3, 600_000).remaining, 1)


class TestRateBucket(unittest.TestCase):
    """Bucket pruning keeps only timestamps inside the window."""

    def test_prune_drops_old_timestamps(self) -> None:
        bucket = RateBucket(key="k")
        bucket.timestamps.extend([1.0, 2.0, 3.0])
        bucket.prune(now=3.5, window=2.0)
        self.assertEqual(list(bucket.timestamps), [2.0, 3.0])
        self.assertEqual(len(bucket), 2)


class TestAcquire(unittest.IsolatedAsyncioTestCase):
    """Permit acquisition and release."""

    async def test_high_water_never_exceeds_limit(self) -> None:
        """20 concurrent holders never exceed max_concurrent."""
        gate = FetchGate(max_concurrent=3)

        async def hold() -> None:
            async with gate.acquire():
                await asyncio.sleep(0.01)

        await asyncio.gather(*(hold() for _ in range(20)))
        self.assertEqual(gate.high_water, 3)
        self.assertEqual(gate.in_flight, 0)

    async def test_permit_released_on_error(self) -> None:
        """A failing holder does not leak its permit."""
        gate = FetchGate(max_concurrent=1)
        with self.assertRaises(RuntimeError):
            async with gate.acquire():
                raise RuntimeError("boom")
        self.assertEqual(gate.in_flight, 0)
        async with gate.acquire():
            self.assertEqual(gate.in_flight, 1)

    async def test_permit_released_on_cancellation(self) -> None:
        """Cancelling a holder frees its permit."""
        gate = FetchGate(max_concurrent=1)
        started = asyncio.Event()

        async def hold_forever() -> None:
            async with gate.acquire():
                started.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(hold_forever())
        await started.wait()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(gate.in_flight, 0)
        async with gate.acquire():
            pass

    async def test_wait_ceiling_raises_gate_timeout(self) -> None:
        """Waiting past the ceiling is a transient fetch failure."""
        gate = FetchGate(max_concurrent=1, wait_ceiling=0.05)
        async with gate.acquire():
            with self.assertRaises(GateTimeoutError) as ctx:
                async with gate.acquire("adapter:x"):
                    pass
        self.assertIsInstance(ctx.exception, TransientFetchError)
        self.assertEqual(gate.in_flight, 0)

    async def test_budget_delays_until_window_frees(self) -> None:
        """A keyed budget makes the extra caller wait for the window."""
        gate = FetchGate(max_concurrent=5, wait_ceiling=2.0)
        gate.set_budget("adapter:x", 2, 200)

        loop = asyncio.get_running_loop()
        started = loop.time()
        for _ in range(3):
            async with gate.acquire("adapter:x"):
                pass
        self.assertGreaterEqual(loop.time() - started, 0.15)
