"""
Change Feed для VolumeScaler objects.

List + watch цикл поверх Kubernetes API:
1. LIST всех VolumeScaler, resourceVersion списка запоминается
2. WATCH начиная с этого resourceVersion
3. При любом прерывании watch (конец stream, network error, 410 Gone) - снова LIST

Каждое ADDED / MODIFIED / DELETED событие ставит в Work Queue ключ
"namespace/name". Тело объекта не сохраняется: reconciler всегда
читает актуальное состояние сам.

Periodic resync повторно ставит в очередь все известные ключи,
чтобы utilization переоценивалась без изменений объекта.
"""

import asyncio
from typing import Optional

from volumescaler.core.config import ChangeFeedSettings
from volumescaler.core.exceptions import KubernetesApiError, ResourceExpiredError
from volumescaler.core.logging import get_logger
from volumescaler.core.metrics import (
    change_feed_known_objects,
    record_change_feed_event,
    record_relist,
)
from volumescaler.services.kube_client import KubernetesClient
from volumescaler.services.work_queue import RateLimitingQueue

logger = get_logger(__name__)

ENQUEUE_EVENT_TYPES = ("ADDED", "MODIFIED", "DELETED")


class ChangeFeed:
    """
    List + watch VolumeScaler objects с постановкой ключей в Work Queue.

    Usage:
        feed = ChangeFeed(kube_client, queue, settings.change_feed)
        await feed.start()

        if not await feed.wait_for_sync(timeout=60):
            raise CacheSyncTimeoutError(...)

        await feed.stop()
    """

    def __init__(
        self,
        kube_client: KubernetesClient,
        queue: RateLimitingQueue,
        config: ChangeFeedSettings,
    ):
        self._kube_client = kube_client
        self._queue = queue
        self._config = config

        self._known_keys: set[str] = set()
        self._resource_version = ""
        self._synced = asyncio.Event()
        self._list_failures = 0
        self._watch_failures = 0

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._resync_task: Optional[asyncio.Task] = None

    @property
    def has_synced(self) -> bool:
        """Первый LIST успешно выполнен."""
        return self._synced.is_set()

    @property
    def known_keys(self) -> frozenset[str]:
        return frozenset(self._known_keys)

    async def wait_for_sync(self, timeout: float) -> bool:
        """
        Ожидание первого успешного LIST.

        Returns:
            bool: False если timeout истёк раньше
        """
        try:
            await asyncio.wait_for(self._synced.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def start(self) -> None:
        """Запуск list+watch и resync в background tasks."""
        if self._running:
            logger.warning("Change feed already running")
            return

        self._running = True
        self._task = asyncio.create_task(self.run())
        if self._config.resync_period > 0:
            self._resync_task = asyncio.create_task(self._resync_loop())

        logger.info(
            "Change feed started",
            extra={"resync_period": self._config.resync_period}
        )

    async def stop(self) -> None:
        """Остановка background tasks."""
        if not self._running:
            return
        self._running = False

        for task in (self._task, self._resync_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._task = None
        self._resync_task = None
        logger.info("Change feed stopped")

    async def run(self) -> None:
        """
        Основной list+watch цикл.

        Ошибки LIST повторяются с exponential backoff. Истёкший resourceVersion
        (410 Gone) и штатный конец watch stream приводят к немедленному re-list,
        остальные ошибки WATCH к re-list после exponential backoff.
        Неожиданные исключения логируются и не останавливают цикл.
        """
        while True:
            try:
                await self.list_once()
            except KubernetesApiError as e:
                delay = self._list_backoff()
                logger.warning(
                    "Failed to list VolumeScalers, retrying",
                    extra={
                        "error": str(e),
                        "retry_in": delay,
                    }
                )
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                delay = self._list_backoff()
                logger.error(
                    "Unexpected error listing VolumeScalers, retrying",
                    extra={
                        "error": str(e),
                        "retry_in": delay,
                    },
                    exc_info=True
                )
                await asyncio.sleep(delay)
                continue

            try:
                await self.watch_once()
                logger.debug("Watch stream ended, relisting")
                continue
            except ResourceExpiredError:
                logger.info(
                    "Watch resource version expired, relisting",
                    extra={"resource_version": self._resource_version}
                )
                continue
            except KubernetesApiError as e:
                delay = self._watch_backoff()
                logger.warning(
                    "Watch failed, relisting",
                    extra={
                        "error": str(e),
                        "retry_in": delay,
                    }
                )
            except Exception as e:
                delay = self._watch_backoff()
                logger.error(
                    "Unexpected error in watch, relisting",
                    extra={
                        "error": str(e),
                        "retry_in": delay,
                    },
                    exc_info=True
                )

            await asyncio.sleep(delay)

    async def list_once(self) -> None:
        """
        LIST VolumeScalers и замена набора известных ключей.

        Все ключи списка ставятся в очередь (дубликаты схлопывает Work Queue).
        Ключи, исчезнувшие с предыдущего LIST, тоже ставятся в очередь:
        reconciler увидит NotFound и завершит обработку удаления.
        """
        try:
            items, resource_version = await self._kube_client.list_volume_scalers()
        except Exception:
            record_relist(False)
            raise

        record_relist(True)
        self._list_failures = 0

        current_keys = {meta.key for meta in items}
        vanished = self._known_keys - current_keys

        for key in sorted(current_keys | vanished):
            self._queue.add(key)

        self._known_keys = current_keys
        self._resource_version = resource_version
        change_feed_known_objects.set(len(self._known_keys))

        if not self._synced.is_set():
            self._synced.set()
            logger.info(
                "Change feed synced",
                extra={
                    "objects": len(current_keys),
                    "resource_version": resource_version,
                }
            )
        elif vanished:
            logger.info(
                "VolumeScalers removed while watch was down",
                extra={"keys": sorted(vanished)}
            )

    async def watch_once(self) -> None:
        """Обработка одного watch stream до его завершения."""
        async for event in self._kube_client.watch_volume_scalers(self._resource_version):
            record_change_feed_event(event.type)

            if event.type == "ERROR":
                status = event.status or {}
                raise KubernetesApiError(
                    f"Watch error event: {status.get('message', 'unknown error')}",
                    status_code=status.get("code"),
                    reason=status.get("reason"),
                )

            self._watch_failures = 0

            if event.metadata is None:
                continue
            if event.metadata.resource_version:
                self._resource_version = event.metadata.resource_version

            if event.type not in ENQUEUE_EVENT_TYPES:
                continue

            key = event.metadata.key
            if event.type == "DELETED":
                self._known_keys.discard(key)
            else:
                self._known_keys.add(key)
            change_feed_known_objects.set(len(self._known_keys))

            logger.debug(
                "VolumeScaler event",
                extra={
                    "event_type": event.type,
                    "key": key,
                }
            )
            self._queue.add(key)

    def resync(self) -> int:
        """
        Поставить в очередь все известные ключи.

        Returns:
            int: Количество поставленных ключей
        """
        keys = sorted(self._known_keys)
        for key in keys:
            self._queue.add(key)
        return len(keys)

    # ========== Internal ==========

    def _backoff(self, failures: int) -> float:
        return min(
            self._config.relist_backoff_base * (2 ** min(failures, 30)),
            self._config.relist_backoff_max,
        )

    def _list_backoff(self) -> float:
        delay = self._backoff(self._list_failures)
        self._list_failures += 1
        return delay

    def _watch_backoff(self) -> float:
        delay = self._backoff(self._watch_failures)
        self._watch_failures += 1
        return delay

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.resync_period)
            if not self.has_synced:
                continue
            count = self.resync()
            logger.debug("Periodic resync", extra={"keys": count})
