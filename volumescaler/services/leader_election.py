"""
Leader Coordinator для VolumeScaler Controller.

Только одна реплика (LEADER) запускает Change Feed и workers:
size-increase requests не должны выполняться параллельно несколькими репликами.

Состояния: STANDBY → LEADING → RELEASED

- Acquire: попытка каждые retry_period до получения lease
- Renew: каждые retry_period; если за renew_deadline нет успешного продления,
  лидерство потеряно → LeadershipLostError (fatal для процесса)
- Каждый вызов lock ограничен оставшимся renew_deadline: зависший API server
  не продлевает работу после истечения lease
- Остановка (cancel) освобождает lease досрочно
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from volumescaler.core.config import LeaderElectionSettings
from volumescaler.core.exceptions import LeadershipLostError, TransientError
from volumescaler.core.logging import get_logger
from volumescaler.core.metrics import (
    record_leader_state,
    record_leader_transition,
    record_lease_operation,
)

logger = get_logger(__name__)


class LeaderState(str, Enum):
    """Состояние реплики в Leader Election."""
    STANDBY = "standby"
    LEADING = "leading"
    RELEASED = "released"


class LeaderCoordinator:
    """
    Leader Election поверх lease lock.

    Usage:
        coordinator = LeaderCoordinator(lock, settings.controller.pod_name, settings.leader_election)

        # Блокирует до получения lease, затем выполняет controller.
        # LeadershipLostError если lease не удалось продлить.
        await coordinator.run(controller.run)
    """

    def __init__(
        self,
        lock,
        identity: str,
        config: LeaderElectionSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            lock: KubernetesLeaseLock или RedisLeaseLock
            identity: Candidate identity реплики (POD_NAME)
            config: LEADER_ELECTION_* настройки
            clock: Monotonic clock (для тестов)
        """
        self._lock = lock
        self._identity = identity
        self._config = config
        self._clock = clock

        self._state = LeaderState.STANDBY
        self._observed_leader: Optional[str] = None

        record_leader_state(identity, False)

    @property
    def state(self) -> LeaderState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self._state == LeaderState.LEADING

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def observed_leader(self) -> Optional[str]:
        """Последний наблюдаемый владелец lease."""
        return self._observed_leader

    async def run(self, on_started_leading: Callable[[], Awaitable[None]]) -> None:
        """
        Получение лидерства и выполнение on_started_leading под lease.

        Возвращается когда on_started_leading завершился (lease освобождается).

        Raises:
            LeadershipLostError: Lease не продлён в течение renew_deadline
        """
        logger.info(
            "Starting leader election",
            extra={
                "identity": self._identity,
                "lock": self._lock.describe(),
                "lease_duration": self._config.lease_duration,
                "renew_deadline": self._config.renew_deadline,
                "retry_period": self._config.retry_period,
            }
        )

        leading_task: Optional[asyncio.Task] = None
        renew_task: Optional[asyncio.Task] = None
        try:
            await self._acquire()

            leading_task = asyncio.create_task(on_started_leading())
            renew_task = asyncio.create_task(self._renew_loop())

            done, _ = await asyncio.wait(
                {leading_task, renew_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if renew_task in done:
                # Лидерство потеряно: controller останавливается немедленно
                leading_task.cancel()
                await asyncio.gather(leading_task, return_exceptions=True)
                renew_task.result()
            else:
                renew_task.cancel()
                await asyncio.gather(renew_task, return_exceptions=True)
                leading_task.result()
        finally:
            for task in (leading_task, renew_task):
                if task is not None and not task.done():
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

            if self._state == LeaderState.LEADING:
                await self._release()

    # ========== Internal ==========

    async def _acquire(self) -> None:
        while True:
            if await self._try_acquire_or_renew(self._config.renew_deadline):
                self._state = LeaderState.LEADING
                record_leader_state(self._identity, True)
                record_leader_transition(self._identity, "acquired")
                logger.info(
                    "Leadership acquired",
                    extra={
                        "identity": self._identity,
                        "lock": self._lock.describe(),
                    }
                )
                return

            await asyncio.sleep(self._config.retry_period)

    async def _renew_loop(self) -> None:
        last_renewed = self._clock()

        while True:
            await asyncio.sleep(self._config.retry_period)

            # Попытка не может пережить renew_deadline: lease истечёт раньше
            remaining = self._config.renew_deadline - (self._clock() - last_renewed)
            if remaining > 0 and await self._try_acquire_or_renew(remaining):
                last_renewed = self._clock()
                record_leader_transition(self._identity, "renewed")
                continue

            if self._clock() - last_renewed >= self._config.renew_deadline:
                self._state = LeaderState.RELEASED
                record_leader_state(self._identity, False)
                record_leader_transition(self._identity, "lost")
                logger.error(
                    "Leadership lost",
                    extra={
                        "identity": self._identity,
                        "current_leader": self._observed_leader,
                        "renew_deadline": self._config.renew_deadline,
                    }
                )
                raise LeadershipLostError(
                    f"Failed to renew lease {self._lock.describe()} "
                    f"within {self._config.renew_deadline}s",
                    details={"identity": self._identity}
                )

    async def _try_acquire_or_renew(self, timeout: float) -> bool:
        try:
            holder = await asyncio.wait_for(
                self._lock.try_acquire_or_renew(self._identity),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            record_lease_operation("timeout")
            logger.warning(
                "Lease operation timed out",
                extra={
                    "identity": self._identity,
                    "timeout": timeout,
                }
            )
            return False
        except TransientError as e:
            record_lease_operation("error")
            logger.warning(
                "Lease operation failed",
                extra={
                    "identity": self._identity,
                    "error": str(e),
                }
            )
            return False

        acquired = holder == self._identity
        record_lease_operation("success" if acquired else "failed")

        if holder and holder != self._observed_leader:
            self._observed_leader = holder
            if not acquired:
                logger.info(
                    "New leader elected",
                    extra={
                        "identity": self._identity,
                        "leader": holder,
                    }
                )

        return acquired

    async def _release(self) -> None:
        try:
            released = await asyncio.wait_for(
                self._lock.release(self._identity),
                timeout=self._config.renew_deadline,
            )
        except (TransientError, asyncio.TimeoutError) as e:
            logger.error(
                "Failed to release leadership",
                extra={
                    "identity": self._identity,
                    "error": str(e) or type(e).__name__,
                }
            )
            released = False

        self._state = LeaderState.RELEASED
        record_leader_state(self._identity, False)
        record_leader_transition(self._identity, "released")
        logger.info(
            "Leadership released",
            extra={
                "identity": self._identity,
                "released": released,
            }
        )
