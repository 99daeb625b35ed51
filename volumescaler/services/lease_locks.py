"""
Lease locks для Leader Election.

Два backend:
- KubernetesLeaseLock: coordination.k8s.io/v1 Lease, optimistic concurrency по resourceVersion
- RedisLeaseLock: SET NX EX, продление через проверку владельца + EXPIRE

Общий контракт:
    holder = await lock.try_acquire_or_renew(identity)
    is_leader = holder == identity

try_acquire_or_renew() возвращает identity владельца lease после попытки
(None если владелец неизвестен). Ошибки хранилища - TransientError.
"""

import math
from datetime import datetime, timezone
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from volumescaler.core.exceptions import ConflictError, NotFoundError, TransientError
from volumescaler.core.logging import get_logger
from volumescaler.schemas.lease import LeaderElectionRecord
from volumescaler.services.kube_client import KubernetesClient

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KubernetesLeaseLock:
    """
    Lock на основе Kubernetes Lease object.

    Чужой lease уважается до renewTime + leaseDurationSeconds.
    Запись выполняется через PUT с resourceVersion прочитанного объекта:
    параллельная запись другой реплики даёт 409 Conflict = попытка неуспешна.
    """

    def __init__(
        self,
        kube_client: KubernetesClient,
        namespace: str,
        name: str,
        lease_duration: float,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._kube_client = kube_client
        self._namespace = namespace
        self._name = name
        self._lease_duration_seconds = int(math.ceil(lease_duration))
        self._clock = clock

    def describe(self) -> str:
        return f"{self._namespace}/{self._name}"

    async def try_acquire_or_renew(self, identity: str) -> Optional[str]:
        now = self._clock()

        try:
            lease = await self._kube_client.get_lease(self._namespace, self._name)
        except NotFoundError:
            record = LeaderElectionRecord(
                holder_identity=identity,
                lease_duration_seconds=self._lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            )
            try:
                await self._kube_client.create_lease(self._namespace, self._name, record)
            except ConflictError:
                # Lease создан другой репликой между GET и POST
                return None
            return identity

        current = lease.record
        if current.is_held_by(identity):
            updated = current.model_copy(update={
                "renew_time": now,
                "lease_duration_seconds": self._lease_duration_seconds,
            })
        elif current.is_expired(now):
            updated = LeaderElectionRecord(
                holder_identity=identity,
                lease_duration_seconds=self._lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=current.lease_transitions + 1,
            )
        else:
            return current.holder_identity

        try:
            await self._kube_client.replace_lease(
                self._namespace, self._name, updated, lease.resource_version
            )
        except ConflictError:
            return None
        return identity

    async def release(self, identity: str) -> bool:
        """
        Досрочное освобождение lease.

        holderIdentity очищается, leaseDurationSeconds = 1:
        другая реплика может захватить lease сразу.
        """
        try:
            lease = await self._kube_client.get_lease(self._namespace, self._name)
        except NotFoundError:
            return False

        if not lease.record.is_held_by(identity):
            return False

        now = self._clock()
        released = LeaderElectionRecord(
            holder_identity="",
            lease_duration_seconds=1,
            acquire_time=now,
            renew_time=now,
            lease_transitions=lease.record.lease_transitions,
        )
        try:
            await self._kube_client.replace_lease(
                self._namespace, self._name, released, lease.resource_version
            )
        except ConflictError:
            return False
        return True


class RedisLeaseLock:
    """
    Lock на основе Redis key с TTL.

    - Получение: SET key identity NX EX ttl (атомарно)
    - Продление: GET (проверка владельца) + EXPIRE
    - Освобождение: GET (проверка владельца) + DEL
    """

    def __init__(self, redis_client: Redis, key: str, lease_duration: float):
        self._redis = redis_client
        self._key = key
        self._ttl = int(math.ceil(lease_duration))

    def describe(self) -> str:
        return self._key

    async def try_acquire_or_renew(self, identity: str) -> Optional[str]:
        try:
            # SET only if NOT exists, expire after TTL
            acquired = await self._redis.set(self._key, identity, nx=True, ex=self._ttl)
            if acquired:
                return identity

            holder = await self._redis.get(self._key)
            if holder == identity:
                await self._redis.expire(self._key, self._ttl)
            return holder
        except RedisError as e:
            raise TransientError(
                f"Redis lease operation failed: {e}",
                details={"key": self._key}
            ) from e

    async def release(self, identity: str) -> bool:
        try:
            # Удаляем lock только если он принадлежит нам
            holder = await self._redis.get(self._key)
            if holder != identity:
                return False
            await self._redis.delete(self._key)
            return True
        except RedisError as e:
            raise TransientError(
                f"Redis lease release failed: {e}",
                details={"key": self._key}
            ) from e
