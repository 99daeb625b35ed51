"""
Controller: Change Feed + Work Queue + N worker loops.

run() выполняется только на LEADER реплике:
1. Запуск Change Feed и ожидание initial sync
2. N workers: get → sync → forget / add_rate_limited → done
3. По stop_event: остановка Change Feed, drain in-flight ключей, выход workers
"""

import asyncio
from typing import Optional

from volumescaler.core.exceptions import (
    CacheSyncTimeoutError,
    PolicyParseError,
    VolumeScalerException,
)
from volumescaler.core.logging import get_logger
from volumescaler.services.change_feed import ChangeFeed
from volumescaler.services.reconciler import Reconciler
from volumescaler.services.work_queue import RateLimitingQueue

logger = get_logger(__name__)


class Controller:
    """
    Reconciliation loop VolumeScaler.

    Usage:
        controller = Controller(feed, queue, reconciler, workers=2, cache_sync_timeout=60)
        await controller.run(stop_event)
    """

    def __init__(
        self,
        change_feed: ChangeFeed,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        workers: int = 2,
        cache_sync_timeout: float = 60.0,
    ):
        self._change_feed = change_feed
        self._queue = queue
        self._reconciler = reconciler
        self._workers = workers
        self._cache_sync_timeout = cache_sync_timeout

        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_synced(self) -> bool:
        return self._change_feed.has_synced

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Запуск controller до stop_event (или отмены задачи).

        Raises:
            CacheSyncTimeoutError: Change Feed не синхронизировался за cache_sync_timeout
        """
        stop_event = stop_event or asyncio.Event()

        logger.info("Starting VolumeScaler controller", extra={"workers": self._workers})
        await self._change_feed.start()

        worker_tasks: list[asyncio.Task] = []
        try:
            logger.info("Waiting for informer caches to sync")
            if not await self._change_feed.wait_for_sync(self._cache_sync_timeout):
                raise CacheSyncTimeoutError(
                    f"Change feed did not sync within {self._cache_sync_timeout}s"
                )

            self._running = True
            worker_tasks = [
                asyncio.create_task(self._run_worker(worker_id))
                for worker_id in range(self._workers)
            ]
            logger.info("Started workers", extra={"workers": self._workers})

            await stop_event.wait()
            logger.info("Shutting down controller")
        finally:
            self._running = False
            await self._change_feed.stop()
            # Cancel и drain не должны прерываться повторной отменой
            await asyncio.shield(self._shutdown(worker_tasks))

        logger.info("Controller stopped")

    async def process_next_item(self) -> bool:
        """
        Обработка одного ключа из очереди.

        Returns:
            bool: False если очередь остановлена
        """
        key, shutdown = await self._queue.get()
        if shutdown:
            return False

        try:
            result = await self._reconciler.sync(key)
        except PolicyParseError as e:
            logger.error(
                "Invalid VolumeScaler policy",
                extra={
                    "key": key,
                    "field": e.field,
                    "error": e.message,
                    "requeues": self._queue.num_requeues(key),
                }
            )
            self._queue.add_rate_limited(key)
        except VolumeScalerException as e:
            logger.warning(
                "Error syncing VolumeScaler, requeuing",
                extra={
                    "key": key,
                    "error": e.message,
                    "error_type": type(e).__name__,
                    "requeues": self._queue.num_requeues(key),
                }
            )
            self._queue.add_rate_limited(key)
        except Exception as e:
            logger.exception(
                "Unexpected error syncing VolumeScaler",
                extra={
                    "key": key,
                    "error": str(e),
                }
            )
            self._queue.add_rate_limited(key)
        else:
            self._queue.forget(key)
            logger.debug(
                "Successfully synced",
                extra={
                    "key": key,
                    "action": result.action.value,
                }
            )
        finally:
            self._queue.done(key)

        return True

    # ========== Internal ==========

    async def _run_worker(self, worker_id: int) -> None:
        while await self.process_next_item():
            pass
        logger.debug("Worker exited", extra={"worker_id": worker_id})

    async def _shutdown(self, worker_tasks: list[asyncio.Task]) -> None:
        # Текущие sync завершаются, новые ключи не выдаются
        await self._queue.shut_down_with_drain()
        if worker_tasks:
            await asyncio.gather(*worker_tasks, return_exceptions=True)
