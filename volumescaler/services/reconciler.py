"""
Reconciler: sync algorithm для одного VolumeScaler.

sync(key) читает актуальное состояние policy и PVC, принимает решение
и выполняет не более одного size-increase request и не более двух
status patches. Каждый patch идемпотентен, поэтому повторная доставка
ключа (at-least-once) безопасна.

Исход:
- SyncResult - успех (в том числе benign no-op: объект удалён, PVC нет,
  volume не смонтирован на этой node, ниже threshold, ...)
- исключение - ошибка, ключ будет повторён через rate limiter

State machine по status.reachedMaxSize: Unset → Tracking → MaxReached (absorbing).
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from volumescaler.core.exceptions import (
    MountPathNotFoundError,
    NotFoundError,
    ProbeQueryError,
    SizeParseError,
)
from volumescaler.core.logging import get_logger
from volumescaler.core.metrics import (
    record_probe_failure,
    record_reconcile,
    record_reconcile_action,
    record_scale_operation,
    record_volume_utilization,
)
from volumescaler.core.units import (
    DEFAULT_SIZE_UNIT,
    GI,
    bytes_to_gi,
    format_size,
    parse_size,
    round_up_to_unit,
    unit_multiplier,
)
from volumescaler.schemas.volume_scaler import (
    PersistentVolumeClaim,
    ScalingPolicy,
    VolumeScaler,
    VolumeSnapshot,
    format_rfc3339,
    parse_policy,
    parse_rfc3339,
)
from volumescaler.services.kube_client import KubernetesClient
from volumescaler.services.utilization_probe import MountPathResolver, UtilizationProbe

logger = get_logger(__name__)


class SyncAction(str, Enum):
    """Решение sync algorithm."""
    INVALID_KEY = "invalid_key"
    DELETED = "deleted"
    VOLUME_MISSING = "volume_missing"
    MAX_SIZE_RECORDED = "max_size_recorded"
    MAX_SIZE_REACHED = "max_size_reached"
    RESIZE_PENDING = "resize_pending"
    MOUNT_NOT_FOUND = "mount_not_found"
    BELOW_THRESHOLD = "below_threshold"
    COOLDOWN = "cooldown"
    NO_GROWTH = "no_growth"
    SCALED = "scaled"


@dataclass(frozen=True)
class SyncResult:
    """
    Результат успешного sync.

    Attributes:
        key: Ключ "namespace/name"
        action: Принятое решение
        new_size: Запрошенный размер (только для SCALED)
        utilization_percent: Измеренная utilization (если probe выполнялся)
    """
    key: str
    action: SyncAction
    new_size: Optional[str] = None
    utilization_percent: Optional[float] = None


def split_key(key: str) -> Optional[tuple[str, str]]:
    """Ключ "namespace/name" → (namespace, name); None для невалидного ключа."""
    parts = key.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """
    Sync algorithm VolumeScaler.

    Usage:
        reconciler = Reconciler(kube_client, resolver, probe)
        result = await reconciler.sync("default/data-scaler")
    """

    def __init__(
        self,
        kube_client: KubernetesClient,
        resolver: MountPathResolver,
        probe: UtilizationProbe,
        near_max_epsilon_bytes: float = GI,
        default_cooldown_seconds: float = 0.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            kube_client: Клиент Kubernetes API
            resolver: Поиск пути монтирования PVC на node
            probe: Измерение utilization по пути
            near_max_epsilon_bytes: Зазор до maxSize, при котором выставляется reachedMaxSize
            default_cooldown_seconds: Cooldown для policy без spec.cooldown
            clock: Текущее UTC время (для тестов)
        """
        self._kube_client = kube_client
        self._resolver = resolver
        self._probe = probe
        self._near_max_epsilon_bytes = near_max_epsilon_bytes
        self._default_cooldown_seconds = default_cooldown_seconds
        self._clock = clock

    async def sync(self, key: str) -> SyncResult:
        """
        Reconciliation одного VolumeScaler.

        Raises:
            PolicyParseError: Spec не парсится (terminal-per-cycle)
            TransientError: Ошибка API или probe (retry)
        """
        start_time = time.perf_counter()
        success = False
        try:
            result = await self._sync(key)
            success = True
        finally:
            record_reconcile(success, time.perf_counter() - start_time)

        record_reconcile_action(result.action.value)
        return result

    async def _sync(self, key: str) -> SyncResult:
        parsed_key = split_key(key)
        if parsed_key is None:
            logger.error("Invalid resource key", extra={"key": key})
            return SyncResult(key=key, action=SyncAction.INVALID_KEY)
        namespace, name = parsed_key

        # 1. Policy
        try:
            volume_scaler = await self._kube_client.get_volume_scaler(namespace, name)
        except NotFoundError:
            logger.info("VolumeScaler no longer exists", extra={"key": key})
            return SyncResult(key=key, action=SyncAction.DELETED)

        # 2. Volume
        pvc_name = volume_scaler.spec.pvc_name
        try:
            pvc = await self._kube_client.get_persistent_volume_claim(namespace, pvc_name)
        except NotFoundError:
            logger.warning(
                "PVC not found",
                extra={
                    "key": key,
                    "namespace": namespace,
                    "pvc": pvc_name,
                }
            )
            return SyncResult(key=key, action=SyncAction.VOLUME_MISSING)

        current_size = self._requested_size(pvc)

        # 3. Policy parsing
        policy = parse_policy(volume_scaler.spec, self._default_cooldown_seconds)

        # 4. Max size
        if volume_scaler.status.reached_max_size:
            logger.debug(
                "VolumeScaler already reached max size",
                extra={"key": key, "pvc": pvc_name}
            )
            return SyncResult(key=key, action=SyncAction.MAX_SIZE_REACHED)

        if current_size >= policy.max_size_bytes:
            await self._mark_reached_max_size(volume_scaler)
            logger.info(
                "PVC has reached its max size, skipping scaling",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "size_gi": round(bytes_to_gi(current_size), 2),
                    "max_size": volume_scaler.spec.max_size,
                }
            )
            return SyncResult(key=key, action=SyncAction.MAX_SIZE_RECORDED)

        # Предыдущий size-increase ещё не применён storage backend
        capacity = self._capacity(pvc)
        if capacity is not None and capacity < current_size:
            logger.info(
                "PVC resize in progress, skipping",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "requested": pvc.requested_storage,
                    "capacity": pvc.status.capacity.get("storage"),
                }
            )
            return SyncResult(key=key, action=SyncAction.RESIZE_PENDING)

        # 5. Utilization
        try:
            mount_path = await self._resolver.resolve(pvc)
            usage = await self._probe.measure(mount_path)
        except MountPathNotFoundError as e:
            record_probe_failure("mount_not_found")
            logger.warning(
                "Volume is not mounted on this node, skipping",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "error": e.message,
                }
            )
            return SyncResult(key=key, action=SyncAction.MOUNT_NOT_FOUND)
        except ProbeQueryError:
            record_probe_failure("query_failed")
            raise

        snapshot = VolumeSnapshot(current_size_bytes=current_size, utilization_percent=usage.percent)
        record_volume_utilization(namespace, pvc_name, snapshot.utilization_percent)

        # 6. Threshold
        if math.floor(snapshot.utilization_percent) < policy.threshold_percent:
            logger.info(
                "No scaling needed",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "size_gi": round(bytes_to_gi(current_size), 2),
                    "utilization": round(snapshot.utilization_percent, 2),
                    "threshold": policy.threshold_percent,
                }
            )
            return SyncResult(
                key=key,
                action=SyncAction.BELOW_THRESHOLD,
                utilization_percent=snapshot.utilization_percent,
            )

        # 7. Cooldown
        now = self._clock()
        if self._in_cooldown(volume_scaler, policy, now):
            logger.info(
                "Scaling suppressed by cooldown",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "scaled_at": volume_scaler.status.scaled_at,
                    "cooldown_seconds": policy.cooldown_seconds,
                }
            )
            return SyncResult(
                key=key,
                action=SyncAction.COOLDOWN,
                utilization_percent=snapshot.utilization_percent,
            )

        # 8-9. New size
        new_size = self.compute_new_size(snapshot.current_size_bytes, policy)
        if new_size <= snapshot.current_size_bytes:
            logger.info(
                "Computed size does not grow the volume",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "size_gi": round(bytes_to_gi(current_size), 2),
                    "max_size": volume_scaler.spec.max_size,
                }
            )
            return SyncResult(
                key=key,
                action=SyncAction.NO_GROWTH,
                utilization_percent=snapshot.utilization_percent,
            )

        # 10. Size-increase request
        new_size_str = format_size(new_size)
        try:
            await self._kube_client.patch_persistent_volume_claim_storage(
                namespace, pvc_name, new_size_str
            )
        except Exception:
            record_scale_operation(False)
            raise
        record_scale_operation(True)

        logger.info(
            "Scaled PVC",
            extra={
                "key": key,
                "pvc": pvc_name,
                "old_size_gi": round(bytes_to_gi(current_size), 2),
                "new_size": new_size_str,
                "utilization": round(snapshot.utilization_percent, 2),
                "threshold": policy.threshold_percent,
            }
        )

        # 11. Status
        await self._kube_client.patch_volume_scaler_status(
            namespace, name, {"scaledAt": format_rfc3339(now)}
        )

        if policy.max_size_bytes - new_size <= self._near_max_epsilon_bytes:
            await self._mark_reached_max_size(volume_scaler)
            logger.info(
                "PVC has reached its max size after scaling",
                extra={
                    "key": key,
                    "pvc": pvc_name,
                    "max_size": volume_scaler.spec.max_size,
                }
            )

        return SyncResult(
            key=key,
            action=SyncAction.SCALED,
            new_size=new_size_str,
            utilization_percent=snapshot.utilization_percent,
        )

    @staticmethod
    def compute_new_size(current_size: float, policy: ScalingPolicy) -> float:
        """
        Новый размер volume в байтах.

        current * (1 + scale%), не больше maxSize, округление вверх до целых Gi.
        Если округление вверх выходит за maxSize, берётся наибольшее целое
        число Gi, не превышающее maxSize.
        """
        target = current_size * (1 + policy.scale_percent / 100)
        target = min(target, policy.max_size_bytes)

        rounded = round_up_to_unit(target, DEFAULT_SIZE_UNIT)
        if rounded > policy.max_size_bytes:
            unit = unit_multiplier(DEFAULT_SIZE_UNIT)
            rounded = math.floor(round(policy.max_size_bytes / unit, 6)) * unit
        return rounded

    # ========== Internal ==========

    @staticmethod
    def _requested_size(pvc: PersistentVolumeClaim) -> float:
        storage = pvc.requested_storage
        if storage is None:
            raise SizeParseError(
                f"PVC '{pvc.metadata.name}' has no storage request",
                field="spec.resources.requests.storage"
            )
        # Kubernetes quantity без suffix - байты
        return parse_size(storage, default_unit="B")

    @staticmethod
    def _capacity(pvc: PersistentVolumeClaim) -> Optional[float]:
        storage = pvc.status.capacity.get("storage")
        if storage is None:
            return None
        try:
            return parse_size(storage, default_unit="B")
        except SizeParseError:
            return None

    @staticmethod
    def _in_cooldown(volume_scaler: VolumeScaler, policy: ScalingPolicy, now: datetime) -> bool:
        if policy.cooldown_seconds <= 0 or not volume_scaler.status.scaled_at:
            return False

        try:
            scaled_at = parse_rfc3339(volume_scaler.status.scaled_at)
        except ValueError:
            logger.warning(
                "Ignoring unparsable scaledAt",
                extra={
                    "key": volume_scaler.key,
                    "scaled_at": volume_scaler.status.scaled_at,
                }
            )
            return False

        return (now - scaled_at).total_seconds() < policy.cooldown_seconds

    async def _mark_reached_max_size(self, volume_scaler: VolumeScaler) -> None:
        if volume_scaler.status.reached_max_size:
            return
        await self._kube_client.patch_volume_scaler_status(
            volume_scaler.metadata.namespace,
            volume_scaler.metadata.name,
            {"reachedMaxSize": True},
        )
