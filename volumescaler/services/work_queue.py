"""
Work Queue для reconciliation keys.

Asyncio реализация rate-limiting очереди (семантика client-go workqueue):
- Дедупликация: ключ, уже ожидающий обработки, повторно не добавляется
- Ключ, добавленный во время обработки, помечается dirty и возвращается
  в очередь после done()
- Не более одной одновременной обработки на ключ
- Отложенное добавление (add_after) и retry с backoff (add_rate_limited)

Все методы кроме get() и shut_down_with_drain() синхронные:
вызываются из одного event loop без блокировок.
"""

import asyncio
from collections import deque
from typing import Hashable, Optional

from volumescaler.core.logging import get_logger
from volumescaler.core.metrics import workqueue_adds_total, workqueue_depth, workqueue_retries_total

logger = get_logger(__name__)


class RateLimitingQueue:
    """
    Дедуплицирующая очередь ключей с rate limited retry.

    Usage:
        queue = RateLimitingQueue(default_controller_rate_limiter(settings.workqueue))

        queue.add("default/data-scaler")

        key, shutdown = await queue.get()
        try:
            await reconciler.sync(key)
            queue.forget(key)
        except Exception:
            queue.add_rate_limited(key)
        finally:
            queue.done(key)
    """

    def __init__(self, rate_limiter=None):
        """
        Args:
            rate_limiter: Объект с when/forget/num_requeues.
                          Без него add_rate_limited() добавляет сразу.
        """
        self._rate_limiter = rate_limiter

        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()

        self._getters: deque[asyncio.Future] = deque()
        self._drain_waiters: list[asyncio.Future] = []
        self._waiting: dict[Hashable, asyncio.TimerHandle] = {}

        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Добавить ключ (no-op если ключ уже ожидает обработки)."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return

        self._dirty.add(key)
        workqueue_adds_total.inc()

        if key in self._processing:
            # Вернётся в очередь в done()
            return

        self._queue.append(key)
        self._update_depth()
        self._wakeup_getter()

    async def get(self) -> tuple[Optional[Hashable], bool]:
        """
        Получить следующий ключ для обработки.

        Ждёт появления ключа. После get() ключ считается in-flight
        до вызова done(key).

        Returns:
            tuple: (key, shutdown). После shut_down() всегда (None, True).
        """
        while not self._queue and not self._shutting_down:
            getter = asyncio.get_running_loop().create_future()
            self._getters.append(getter)
            try:
                await getter
            except asyncio.CancelledError:
                if getter in self._getters:
                    self._getters.remove(getter)
                elif not getter.cancelled():
                    # Пробуждение предназначалось этому getter: передаём следующему
                    self._wakeup_getter()
                raise

        if self._shutting_down:
            return None, True

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        self._update_depth()
        return key, False

    def done(self, key: Hashable) -> None:
        """Завершение обработки ключа."""
        self._processing.discard(key)

        if key in self._dirty:
            self._queue.append(key)
            self._update_depth()
            self._wakeup_getter()

        if not self._processing:
            self._notify_drained()

    def add_after(self, key: Hashable, delay: float) -> None:
        """
        Добавить ключ после задержки.

        Для уже ожидающего таймера сохраняется более ранний срок.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay

        existing = self._waiting.get(key)
        if existing is not None:
            if existing.when() <= ready_at:
                return
            existing.cancel()

        self._waiting[key] = loop.call_at(ready_at, self._fire_waiting, key)

    def add_rate_limited(self, key: Hashable) -> None:
        """Retry ключа с задержкой от rate limiter."""
        delay = self._rate_limiter.when(key) if self._rate_limiter is not None else 0.0
        workqueue_retries_total.inc()
        self.add_after(key, delay)

    def forget(self, key: Hashable) -> None:
        """Сброс истории retry ключа (после успешной обработки)."""
        if self._rate_limiter is not None:
            self._rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        if self._rate_limiter is None:
            return 0
        return self._rate_limiter.num_requeues(key)

    def shut_down(self) -> None:
        """
        Остановка очереди.

        Новые ключи не принимаются, отложенные добавления отменяются,
        все ожидающие get() пробуждаются.
        """
        if self._shutting_down:
            return
        self._shutting_down = True

        for handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()

        while self._getters:
            getter = self._getters.popleft()
            if not getter.done():
                getter.set_result(None)

        logger.info(
            "Work queue shut down",
            extra={
                "pending": len(self._queue),
                "processing": len(self._processing),
            }
        )

    async def shut_down_with_drain(self) -> None:
        """shut_down() и ожидание завершения всех in-flight ключей."""
        self.shut_down()

        while self._processing:
            waiter = asyncio.get_running_loop().create_future()
            self._drain_waiters.append(waiter)
            await waiter

    # ========== Internal ==========

    def _fire_waiting(self, key: Hashable) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    def _wakeup_getter(self) -> None:
        while self._getters:
            getter = self._getters.popleft()
            if not getter.done():
                getter.set_result(None)
                return

    def _notify_drained(self) -> None:
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _update_depth(self) -> None:
        workqueue_depth.set(len(self._queue))
