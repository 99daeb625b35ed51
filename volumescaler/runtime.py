"""
Controller Runtime: сборка и lifecycle компонентов VolumeScaler Controller.

Создаёт клиентов и сервисы из Settings и запускает reconciliation loop
в background task:

    LEADER_ELECTION_ENABLED=on:  LeaderCoordinator.run(controller.run)
    LEADER_ELECTION_ENABLED=off: controller.run

Fatal ошибки (потеря лидерства, timeout initial sync) выставляют
exit_code=1 и вызывают on_fatal (остановка HTTP сервера).
"""

import asyncio
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from volumescaler.core.config import LeaderElectionBackend, Settings
from volumescaler.core.exceptions import LeadershipLostError, VolumeScalerException
from volumescaler.core.logging import get_logger
from volumescaler.services.change_feed import ChangeFeed
from volumescaler.services.controller import Controller
from volumescaler.services.kube_client import KubernetesClient
from volumescaler.services.leader_election import LeaderCoordinator, LeaderState
from volumescaler.services.lease_locks import KubernetesLeaseLock, RedisLeaseLock
from volumescaler.services.rate_limiter import default_controller_rate_limiter
from volumescaler.services.reconciler import Reconciler
from volumescaler.services.utilization_probe import MountPathResolver, build_probe
from volumescaler.services.work_queue import RateLimitingQueue

logger = get_logger(__name__)


class ControllerRuntime:
    """
    Lifecycle reconciliation loop.

    Usage:
        runtime = ControllerRuntime(settings)
        await runtime.start()
        ...
        await runtime.stop()
        sys.exit(runtime.exit_code)
    """

    def __init__(
        self,
        settings: Settings,
        kube_client: Optional[KubernetesClient] = None,
        redis_client: Optional[Redis] = None,
    ):
        self._settings = settings
        self._kube_client = kube_client or KubernetesClient(settings.kubernetes)
        self._redis_client = redis_client

        self.exit_code = 0
        self.on_fatal: Optional[Callable[[], None]] = None

        self._controller: Optional[Controller] = None
        self._coordinator: Optional[LeaderCoordinator] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def controller(self) -> Optional[Controller]:
        return self._controller

    @property
    def coordinator(self) -> Optional[LeaderCoordinator]:
        return self._coordinator

    async def start(self) -> None:
        """
        Сборка компонентов и запуск reconciliation loop.

        Raises:
            ConfigurationError: Нет доступа к API server
        """
        settings = self._settings

        try:
            await self._kube_client.initialize()
        except VolumeScalerException:
            self.exit_code = 1
            raise

        queue = RateLimitingQueue(default_controller_rate_limiter(settings.workqueue))
        change_feed = ChangeFeed(self._kube_client, queue, settings.change_feed)
        reconciler = Reconciler(
            self._kube_client,
            MountPathResolver(
                self._kube_client,
                settings.controller.node_name,
                settings.probe.kubelet_root,
            ),
            build_probe(settings.probe),
            near_max_epsilon_bytes=settings.controller.near_max_epsilon_bytes,
            default_cooldown_seconds=settings.controller.default_cooldown_seconds,
        )
        self._controller = Controller(
            change_feed,
            queue,
            reconciler,
            workers=settings.controller.workers,
            cache_sync_timeout=settings.controller.cache_sync_timeout,
        )

        if settings.leader_election.enabled:
            self._coordinator = LeaderCoordinator(
                self._build_lock(),
                settings.controller.pod_name,
                settings.leader_election,
            )

        self._task = asyncio.create_task(self._run())
        self._started = True

        logger.info(
            "Controller runtime started",
            extra={
                "node_name": settings.controller.node_name,
                "pod_name": settings.controller.pod_name,
                "leader_election": settings.leader_election.enabled,
                "leader_election_backend": settings.leader_election.backend.value,
                "probe_backend": settings.probe.backend.value,
            }
        )

    async def stop(self) -> None:
        """Graceful shutdown: drain workers, release lease, закрытие клиентов."""
        self._stop_event.set()

        if self._task is not None:
            if self._coordinator is not None and self._coordinator.state == LeaderState.STANDBY:
                # Ожидание lease прерывается сразу
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._kube_client.close()
        if self._redis_client is not None:
            await self._redis_client.aclose()
            self._redis_client = None

        logger.info("Controller runtime stopped", extra={"exit_code": self.exit_code})

    def status(self) -> dict:
        """Состояние для readiness probe."""
        controller_synced = self._controller.has_synced if self._controller else False
        return {
            "started": self._started,
            "leader_election": self._coordinator.state.value if self._coordinator else "disabled",
            "leader": self._coordinator.observed_leader if self._coordinator else None,
            "change_feed_synced": controller_synced,
            "exit_code": self.exit_code,
        }

    def is_ready(self) -> bool:
        """
        Ready: standby реплика, или leader (или единственная реплика)
        с синхронизированным Change Feed.
        """
        if not self._started or self.exit_code != 0:
            return False

        controller_synced = self._controller.has_synced if self._controller else False
        if self._coordinator is None:
            return controller_synced

        if self._coordinator.state == LeaderState.STANDBY:
            return True
        if self._coordinator.state == LeaderState.LEADING:
            return controller_synced
        return False

    # ========== Internal ==========

    def _build_lock(self):
        config = self._settings.leader_election

        if config.backend == LeaderElectionBackend.REDIS:
            if self._redis_client is None:
                self._redis_client = aioredis.from_url(
                    self._settings.redis.url,
                    max_connections=self._settings.redis.pool_size,
                    socket_timeout=self._settings.redis.socket_timeout,
                    socket_connect_timeout=self._settings.redis.socket_connect_timeout,
                    decode_responses=True,
                )
            return RedisLeaseLock(self._redis_client, config.redis_key, config.lease_duration)

        return KubernetesLeaseLock(
            self._kube_client,
            config.lease_namespace,
            config.lease_name,
            config.lease_duration,
        )

    async def _run(self) -> None:
        try:
            if self._coordinator is not None:
                await self._coordinator.run(self._run_controller)
            else:
                await self._run_controller()
        except asyncio.CancelledError:
            raise
        except LeadershipLostError as e:
            self.exit_code = 1
            logger.critical(
                "Leader election lost",
                extra={
                    "error": e.message,
                    "identity": self._settings.controller.pod_name,
                }
            )
        except VolumeScalerException as e:
            self.exit_code = 1
            logger.critical(
                "Controller failed",
                extra={
                    "error": e.message,
                    "error_type": type(e).__name__,
                }
            )
        except Exception as e:
            self.exit_code = 1
            logger.exception("Controller crashed", extra={"error": str(e)})

        if self.exit_code != 0 and self.on_fatal is not None:
            self.on_fatal()

    async def _run_controller(self) -> None:
        await self._controller.run(self._stop_event)
