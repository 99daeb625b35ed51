"""
VolumeScaler Controller - Resource Schemas.

Pydantic models для объектов Kubernetes API, с которыми работает controller:
- VolumeScaler custom resource (spec + status sub-resource)
- PersistentVolumeClaim и Pod (только используемые поля)

Decode из JSON API выполняется на границе (kube client), reconciler
получает только типизированные объекты. Ошибка decode VolumeScaler -
PolicyParseError (terminal-per-cycle).

ScalingPolicy - результат парсинга строковых полей spec в семантические единицы.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from volumescaler.core.exceptions import PolicyParseError
from volumescaler.core.units import parse_duration_seconds, parse_percent, parse_size

PERCENT_PATTERN = re.compile(r"^[0-9]+%$")
MAX_SIZE_PATTERN = re.compile(r"^[0-9]+Gi$")

# RFC3339 в UTC с точностью до секунд (формат status.scaledAt)
RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_rfc3339(moment: datetime) -> str:
    """datetime → RFC3339 UTC строка ("2024-05-01T12:00:00Z")."""
    return moment.astimezone(timezone.utc).strftime(RFC3339_FORMAT)


def parse_rfc3339(value: str) -> datetime:
    """
    RFC3339 строка → aware datetime.

    Raises:
        ValueError: Невалидный timestamp
    """
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    moment = datetime.fromisoformat(raw)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class ObjectMeta(BaseModel):
    """Metadata объекта Kubernetes."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = Field(None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        """Namespace-qualified ключ для Work Queue."""
        return f"{self.namespace}/{self.name}"


class VolumeScalerSpec(BaseModel):
    """
    Spec VolumeScaler (принадлежит пользователю, read-only для controller).

    Строковые поля валидируются CRD schema; здесь проверяется только
    наличие и тип, парсинг значений - в parse_policy().
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pvc_name: str = Field(alias="pvcName", min_length=1)
    threshold: str
    scale: str
    max_size: str = Field(alias="maxSize")
    cooldown: Optional[Union[int, str]] = None


class VolumeScalerStatus(BaseModel):
    """Status sub-resource (принадлежит controller)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scaled_at: Optional[str] = Field(None, alias="scaledAt")
    reached_max_size: bool = Field(False, alias="reachedMaxSize")


class VolumeScaler(BaseModel):
    """VolumeScaler custom resource."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    metadata: ObjectMeta
    spec: VolumeScalerSpec
    status: VolumeScalerStatus = Field(default_factory=VolumeScalerStatus)

    @property
    def key(self) -> str:
        return self.metadata.key

    @classmethod
    def from_api(cls, obj: dict) -> "VolumeScaler":
        """
        Decode объекта из ответа Kubernetes API.

        Raises:
            PolicyParseError: Объект не соответствует схеме
        """
        try:
            # status может прийти как null
            data = dict(obj)
            if data.get("status") is None:
                data.pop("status", None)
            return cls.model_validate(data)
        except ValidationError as e:
            name = (obj.get("metadata") or {}).get("name") if isinstance(obj, dict) else None
            raise PolicyParseError(
                f"Error decoding VolumeScaler '{name}': {e.error_count()} validation error(s)",
                details={"errors": e.errors(include_url=False)}
            ) from e


class ResourceRequirements(BaseModel):
    model_config = ConfigDict(extra="ignore")

    requests: dict[str, str] = Field(default_factory=dict)


class PersistentVolumeClaimSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    volume_name: Optional[str] = Field(None, alias="volumeName")


class PersistentVolumeClaimStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phase: Optional[str] = None
    capacity: dict[str, str] = Field(default_factory=dict)


class PersistentVolumeClaim(BaseModel):
    """PersistentVolumeClaim (используемые поля)."""

    model_config = ConfigDict(extra="ignore")

    metadata: ObjectMeta
    spec: PersistentVolumeClaimSpec = Field(default_factory=PersistentVolumeClaimSpec)
    status: PersistentVolumeClaimStatus = Field(default_factory=PersistentVolumeClaimStatus)

    @property
    def requested_storage(self) -> Optional[str]:
        """spec.resources.requests.storage - размер, который controller увеличивает."""
        return self.spec.resources.requests.get("storage")

    @property
    def volume_dir_name(self) -> str:
        """
        Имя директории volume в kubelet.

        Для dynamically provisioned volumes совпадает с PV name "pvc-<uid>".
        """
        if self.spec.volume_name:
            return self.spec.volume_name
        return f"pvc-{self.metadata.uid}"


class PodVolumeClaimSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    claim_name: str = Field(alias="claimName")


class PodVolume(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    persistent_volume_claim: Optional[PodVolumeClaimSource] = Field(
        None, alias="persistentVolumeClaim"
    )


class PodSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    node_name: Optional[str] = Field(None, alias="nodeName")
    volumes: list[PodVolume] = Field(default_factory=list)


class PodStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phase: Optional[str] = None


class Pod(BaseModel):
    """Pod (используемые поля)."""

    model_config = ConfigDict(extra="ignore")

    metadata: ObjectMeta
    spec: PodSpec = Field(default_factory=PodSpec)
    status: PodStatus = Field(default_factory=PodStatus)

    def mounts_claim(self, claim_name: str) -> bool:
        return any(
            v.persistent_volume_claim is not None
            and v.persistent_volume_claim.claim_name == claim_name
            for v in self.spec.volumes
        )


@dataclass(frozen=True)
class ScalingPolicy:
    """
    Типизированная scaling policy.

    Attributes:
        target_volume_name: Имя PVC в namespace policy
        threshold_percent: 0..100, utilization >= threshold запускает рост
        scale_percent: Прирост размера в процентах от текущего
        max_size_bytes: Верхняя граница размера volume
        cooldown_seconds: Минимальный интервал между scale операциями (0 = нет)
    """
    target_volume_name: str
    threshold_percent: int
    scale_percent: float
    max_size_bytes: float
    cooldown_seconds: float = 0.0


@dataclass(frozen=True)
class VolumeSnapshot:
    """Состояние volume, полученное в текущем reconciliation pass."""
    current_size_bytes: float
    utilization_percent: float


def parse_policy(spec: VolumeScalerSpec, default_cooldown_seconds: float = 0.0) -> ScalingPolicy:
    """
    Парсинг spec VolumeScaler в ScalingPolicy.

    Args:
        spec: Spec объекта
        default_cooldown_seconds: Cooldown если spec.cooldown не задан

    Returns:
        ScalingPolicy

    Raises:
        PolicyParseError: Любое поле невалидно
    """
    if not PERCENT_PATTERN.match(spec.threshold.strip()):
        raise PolicyParseError(f"Invalid threshold: {spec.threshold!r}", field="threshold")
    threshold = int(parse_percent(spec.threshold, field="threshold"))
    if threshold > 100:
        raise PolicyParseError(
            f"Threshold must be within 0-100%: {spec.threshold!r}", field="threshold"
        )

    if not PERCENT_PATTERN.match(spec.scale.strip()):
        raise PolicyParseError(f"Invalid scale: {spec.scale!r}", field="scale")
    scale = parse_percent(spec.scale, field="scale")
    if scale <= 0:
        raise PolicyParseError(f"Scale must be positive: {spec.scale!r}", field="scale")

    if not MAX_SIZE_PATTERN.match(spec.max_size.strip()):
        raise PolicyParseError(f"Invalid maxSize: {spec.max_size!r}", field="maxSize")
    max_size = parse_size(spec.max_size)
    if max_size <= 0:
        raise PolicyParseError(f"maxSize must be positive: {spec.max_size!r}", field="maxSize")

    if spec.cooldown is None:
        cooldown = default_cooldown_seconds
    else:
        cooldown = parse_duration_seconds(spec.cooldown, field="cooldown")

    return ScalingPolicy(
        target_volume_name=spec.pvc_name,
        threshold_percent=threshold,
        scale_percent=scale,
        max_size_bytes=max_size,
        cooldown_seconds=cooldown,
    )
