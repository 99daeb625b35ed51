"""
Rate limiters для Work Queue.

Default controller rate limiter = max из двух ограничений:
- ItemExponentialFailureRateLimiter: per-key exponential backoff (5ms → 1000s)
- BucketRateLimiter: общий token bucket (10 qps, burst 100)

Первый защищает от зацикливания на одном сломанном объекте,
второй ограничивает суммарную нагрузку retry на API server.
"""

import time
from typing import Callable, Hashable

from volumescaler.core.config import WorkQueueSettings


class ItemExponentialFailureRateLimiter:
    """
    Per-item exponential backoff: base_delay * 2^failures, не больше max_delay.

    Счётчик failures сбрасывается через forget(item).
    """

    def __init__(self, base_delay: float, max_delay: float):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1

        # 2^exp переполняет float задолго до практического значения
        if exp >= 64:
            return self._max_delay
        return min(self._base_delay * (2 ** exp), self._max_delay)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)


class BucketRateLimiter:
    """
    Общий token bucket.

    Каждый вызов when() резервирует один token. Если bucket пуст,
    возвращается время до появления зарезервированного token.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._qps)

        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Худшая (максимальная) задержка из всех limiters."""

    def __init__(self, *limiters):
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max((limiter.when(item) for limiter in self._limiters), default=0.0)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max((limiter.num_requeues(item) for limiter in self._limiters), default=0)


def default_controller_rate_limiter(config: WorkQueueSettings) -> MaxOfRateLimiter:
    """
    Rate limiter по умолчанию для controller Work Queue.

    Args:
        config: WORKQUEUE_* настройки

    Returns:
        MaxOfRateLimiter: exponential per-item + overall token bucket
    """
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(config.base_delay, config.max_delay),
        BucketRateLimiter(config.qps, config.burst),
    )
