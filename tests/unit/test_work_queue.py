"""
Unit tests для Work Queue и rate limiters.

Тестирует:
- Дедупликацию ключей (duplicate-enqueue collapsing)
- Dirty ключи во время обработки
- add_after / add_rate_limited
- shut_down и shut_down_with_drain
- Exponential / token bucket / max-of rate limiters
"""

import asyncio

import pytest

from volumescaler.core.config import WorkQueueSettings
from volumescaler.services.rate_limiter import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    default_controller_rate_limiter,
)
from volumescaler.services.work_queue import RateLimitingQueue


# ============================================================================
# WORK QUEUE
# ============================================================================

class TestRateLimitingQueue:
    """Тесты семантики очереди."""

    @pytest.mark.asyncio
    async def test_duplicate_adds_collapse(self):
        """N add() одного ключа до get() - одна выдача."""
        queue = RateLimitingQueue()

        for _ in range(5):
            queue.add("default/a")

        assert len(queue) == 1
        key, shutdown = await queue.get()
        assert (key, shutdown) == ("default/a", False)
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_fifo_order_for_distinct_keys(self):
        queue = RateLimitingQueue()
        queue.add("ns/a")
        queue.add("ns/b")

        assert (await queue.get())[0] == "ns/a"
        assert (await queue.get())[0] == "ns/b"

    @pytest.mark.asyncio
    async def test_key_added_while_processing_requeued_after_done(self):
        """Ключ в обработке не выдаётся повторно до done()."""
        queue = RateLimitingQueue()
        queue.add("ns/a")
        key, _ = await queue.get()

        queue.add("ns/a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert (await queue.get())[0] == "ns/a"

    @pytest.mark.asyncio
    async def test_get_waits_for_add(self):
        queue = RateLimitingQueue()

        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not getter.done()

        queue.add("ns/a")
        key, shutdown = await asyncio.wait_for(getter, timeout=1)

        assert key == "ns/a"
        assert shutdown is False

    @pytest.mark.asyncio
    async def test_cancelled_getter_does_not_lose_key(self):
        queue = RateLimitingQueue()

        cancelled = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        cancelled.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cancelled

        queue.add("ns/a")
        key, _ = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "ns/a"

    @pytest.mark.asyncio
    async def test_add_after_delays_key(self):
        queue = RateLimitingQueue()

        queue.add_after("ns/a", 0.05)
        assert len(queue) == 0

        key, _ = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "ns/a"

    @pytest.mark.asyncio
    async def test_add_after_keeps_earliest_deadline(self):
        queue = RateLimitingQueue()

        queue.add_after("ns/a", 10)
        queue.add_after("ns/a", 0.01)

        key, _ = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "ns/a"

    @pytest.mark.asyncio
    async def test_add_rate_limited_and_forget(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=0.01)
        queue = RateLimitingQueue(limiter)

        queue.add_rate_limited("ns/a")
        queue.add_rate_limited("ns/a")
        assert queue.num_requeues("ns/a") == 2

        key, _ = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "ns/a"

        queue.forget("ns/a")
        assert queue.num_requeues("ns/a") == 0

    @pytest.mark.asyncio
    async def test_shut_down_wakes_getters(self):
        queue = RateLimitingQueue()
        getter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shut_down()

        assert await asyncio.wait_for(getter, timeout=1) == (None, True)

    @pytest.mark.asyncio
    async def test_shut_down_refuses_adds_and_gets(self):
        queue = RateLimitingQueue()
        queue.add("ns/a")

        queue.shut_down()
        queue.add("ns/b")

        assert queue.shutting_down is True
        assert await queue.get() == (None, True)

    @pytest.mark.asyncio
    async def test_shut_down_cancels_delayed_adds(self):
        queue = RateLimitingQueue()
        queue.add_after("ns/a", 0.01)

        queue.shut_down()
        await asyncio.sleep(0.03)

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_shut_down_with_drain_waits_for_in_flight(self):
        queue = RateLimitingQueue()
        queue.add("ns/a")
        key, _ = await queue.get()

        drain = asyncio.create_task(queue.shut_down_with_drain())
        await asyncio.sleep(0.01)
        assert not drain.done()

        queue.done(key)
        await asyncio.wait_for(drain, timeout=1)

    @pytest.mark.asyncio
    async def test_shut_down_with_drain_idle_returns(self):
        queue = RateLimitingQueue()

        await asyncio.wait_for(queue.shut_down_with_drain(), timeout=1)


# ============================================================================
# RATE LIMITERS
# ============================================================================

class TestRateLimiters:
    """Тесты rate limiters."""

    def test_exponential_backoff(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

        delays = [limiter.when("ns/a") for _ in range(4)]

        assert delays == pytest.approx([0.005, 0.01, 0.02, 0.04])
        assert limiter.num_requeues("ns/a") == 4

    def test_exponential_backoff_capped(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)

        for _ in range(100):
            delay = limiter.when("ns/a")

        assert delay == 1000

    def test_exponential_per_item(self):
        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=100)
        limiter.when("ns/a")
        limiter.when("ns/a")

        assert limiter.when("ns/b") == 1

        limiter.forget("ns/a")
        assert limiter.when("ns/a") == 1

    def test_bucket_burst_then_throttle(self):
        now = [0.0]
        limiter = BucketRateLimiter(qps=10, burst=2, clock=lambda: now[0])

        assert limiter.when("a") == 0.0
        assert limiter.when("b") == 0.0
        assert limiter.when("c") == pytest.approx(0.1)
        assert limiter.when("d") == pytest.approx(0.2)

        now[0] = 1.0
        assert limiter.when("e") == 0.0

    def test_max_of_limiters(self):
        now = [0.0]
        limiter = MaxOfRateLimiter(
            ItemExponentialFailureRateLimiter(base_delay=0.5, max_delay=10),
            BucketRateLimiter(qps=10, burst=100, clock=lambda: now[0]),
        )

        assert limiter.when("ns/a") == 0.5
        assert limiter.when("ns/a") == 1.0
        assert limiter.num_requeues("ns/a") == 2

        limiter.forget("ns/a")
        assert limiter.num_requeues("ns/a") == 0

    def test_default_controller_rate_limiter(self):
        limiter = default_controller_rate_limiter(WorkQueueSettings())

        assert limiter.when("ns/a") == pytest.approx(0.005)
