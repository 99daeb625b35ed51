"""
VolumeScaler Controller - Configuration Management.

Centralized конфигурация с приоритетом environment variables над .env файлом.

Settings создаётся один раз в entry point (get_settings()) и передаётся
в сервисы через параметры конструкторов. Core логика НЕ читает environment.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_bool_from_env(v) -> bool:
    """
    Парсинг boolean значения из формата on/off.

    Поддерживаемые форматы:
    - on/off (единственный допустимый)
    - Python bool (для внутреннего использования)

    Args:
        v: Значение для парсинга (str, bool)

    Returns:
        bool: Распарсенное boolean значение

    Raises:
        ValueError: Если значение невалидно
    """
    if isinstance(v, bool):
        return v

    if isinstance(v, str):
        v_lower = v.lower().strip()

        if v_lower == "on":
            return True
        if v_lower == "off":
            return False

    raise ValueError(
        f"Невалидное boolean значение: '{v}'. "
        f"Допустимые значения: on/off"
    )


class LogLevel(str, Enum):
    """Уровни логирования."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Форматы логирования."""
    JSON = "json"
    TEXT = "text"


class LeaderElectionBackend(str, Enum):
    """Хранилище lease record для Leader Election."""
    KUBERNETES = "kubernetes"
    REDIS = "redis"


class ProbeBackend(str, Enum):
    """Способ измерения utilization файловой системы."""
    DF = "df"
    STATVFS = "statvfs"


class AppSettings(BaseSettings):
    """Настройки приложения (HTTP сервер для health/metrics)."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False
    )

    name: str = "volumescaler-controller"
    version: str = "0.1.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("debug", mode="before")
    @classmethod
    def parse_bool_fields(cls, v):
        """Парсинг boolean полей из environment variables."""
        return parse_bool_from_env(v)


class ControllerSettings(BaseSettings):
    """
    Настройки reconciliation loop.

    Identity (ОБЯЗАТЕЛЬНЫЕ параметры, обычно через Downward API):
        NODE_NAME=worker-1   (legacy: NODE_NAME_ENV)
        POD_NAME=volumescaler-controller-7d9f8c-abcde

    Отсутствие любого из них - fatal startup error.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTROLLER_",
        case_sensitive=False,
        populate_by_name=True
    )

    node_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("node_name", "NODE_NAME", "NODE_NAME_ENV"),
        description="Имя node, на которой запущен controller"
    )
    pod_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("pod_name", "POD_NAME"),
        description="Уникальная identity реплики (candidate identity для Leader Election)"
    )

    workers: int = Field(
        default=2,
        ge=1,
        description="Количество worker loops"
    )
    default_cooldown_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Cooldown между scale операциями, если policy не задаёт свой (0 = без cooldown)"
    )
    near_max_epsilon_bytes: int = Field(
        default=1024 ** 3,
        ge=0,
        description="Зазор до maxSize, при котором volume считается достигшим максимума"
    )
    cache_sync_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Таймаут ожидания initial sync Change Feed в секундах"
    )

    @field_validator("node_name", "pod_name", mode="before")
    @classmethod
    def strip_identity(cls, v):
        """Пустая строка из environment эквивалентна отсутствию значения."""
        if isinstance(v, str):
            return v.strip()
        return v


class KubernetesSettings(BaseSettings):
    """
    Настройки доступа к Kubernetes API.

    По умолчанию используется in-cluster конфигурация:
    KUBERNETES_SERVICE_HOST / KUBERNETES_SERVICE_PORT и service account token.
    """

    model_config = SettingsConfigDict(
        env_prefix="KUBERNETES_",
        case_sensitive=False
    )

    service_host: Optional[str] = None
    service_port: int = 443
    api_url: Optional[str] = Field(
        default=None,
        description="Явный URL API server (перекрывает service_host/service_port)"
    )
    token_path: Path = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
    ca_path: Path = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
    verify_ssl: bool = True
    timeout: float = Field(
        default=30.0,
        description="HTTP request timeout в секундах"
    )
    watch_timeout_seconds: int = Field(
        default=300,
        description="Server-side timeoutSeconds для watch запросов"
    )

    # VolumeScaler CRD
    group: str = "zghanem.aws"
    version: str = "v1"
    plural: str = "volumescalers"

    @field_validator("verify_ssl", mode="before")
    @classmethod
    def parse_bool_fields(cls, v):
        """Парсинг boolean полей из environment variables."""
        return parse_bool_from_env(v)

    @property
    def base_url(self) -> Optional[str]:
        """
        URL Kubernetes API server.

        Returns:
            str: URL или None если конфигурация отсутствует
        """
        if self.api_url:
            return self.api_url.rstrip("/")
        if self.service_host:
            host = self.service_host
            # IPv6 адрес необходимо заключить в скобки
            if ":" in host and not host.startswith("["):
                host = f"[{host}]"
            return f"https://{host}:{self.service_port}"
        return None


class LeaderElectionSettings(BaseSettings):
    """
    Настройки Leader Election.

    Только 1 реплика (LEADER) запускает Change Feed и workers.
    Потеря лидерства - fatal для процесса (supervisor перезапустит pod).
    """

    model_config = SettingsConfigDict(
        env_prefix="LEADER_ELECTION_",
        case_sensitive=False
    )

    enabled: bool = True
    backend: LeaderElectionBackend = LeaderElectionBackend.KUBERNETES

    lease_name: str = "volumescaler-controller-lock"
    lease_namespace: str = "kube-system"
    redis_key: str = "volumescaler:leader_lock"

    lease_duration: float = Field(
        default=15.0,
        description="Длительность lease в секундах"
    )
    renew_deadline: float = Field(
        default=10.0,
        description="Максимальное время без успешного продления до потери лидерства"
    )
    retry_period: float = Field(
        default=2.0,
        description="Интервал попыток получения/продления lease"
    )

    @field_validator("enabled", mode="before")
    @classmethod
    def parse_bool_fields(cls, v):
        """Парсинг boolean полей из environment variables."""
        return parse_bool_from_env(v)

    @model_validator(mode="after")
    def validate_timings(self):
        """lease_duration > renew_deadline > retry_period > 0."""
        if self.retry_period <= 0:
            raise ValueError("retry_period must be positive")
        if not self.lease_duration > self.renew_deadline > self.retry_period:
            raise ValueError(
                "Leader election timings must satisfy "
                "lease_duration > renew_deadline > retry_period"
            )
        return self


class RedisSettings(BaseSettings):
    """Настройки Redis (используется только при LEADER_ELECTION_BACKEND=redis)."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False
    )

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    pool_size: int = Field(default=10, alias="REDIS_POOL_SIZE")
    socket_timeout: float = Field(default=5.0, alias="REDIS_SOCKET_TIMEOUT")
    socket_connect_timeout: float = Field(default=5.0, alias="REDIS_SOCKET_CONNECT_TIMEOUT")

    @property
    def url(self) -> str:
        """
        Формирование Redis URL.

        Returns:
            str: Redis URL в формате redis://[:password@]host:port/db
        """
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class WorkQueueSettings(BaseSettings):
    """
    Настройки rate limiter для Work Queue.

    Задержка retry = max(per-item exponential backoff, overall token bucket).
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKQUEUE_",
        case_sensitive=False
    )

    base_delay: float = Field(default=0.005, gt=0, description="Первая задержка retry в секундах")
    max_delay: float = Field(default=1000.0, gt=0, description="Максимальная задержка retry в секундах")
    qps: float = Field(default=10.0, gt=0, description="Общий лимит retry в секунду")
    burst: int = Field(default=100, ge=1, description="Размер token bucket")


class ChangeFeedSettings(BaseSettings):
    """Настройки list+watch для VolumeScaler objects."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGE_FEED_",
        case_sensitive=False
    )

    resync_period: float = Field(
        default=60.0,
        ge=0,
        description="Период повторной постановки всех известных ключей в очередь (0 = отключено)"
    )
    relist_backoff_base: float = Field(default=1.0, gt=0)
    relist_backoff_max: float = Field(default=30.0, gt=0)


class ProbeSettings(BaseSettings):
    """Настройки измерения utilization смонтированных volumes."""

    model_config = SettingsConfigDict(
        env_prefix="PROBE_",
        case_sensitive=False
    )

    backend: ProbeBackend = ProbeBackend.DF
    kubelet_root: Path = Path("/var/lib/kubelet")
    df_command: str = "df"
    timeout: float = Field(default=10.0, gt=0, description="Таймаут df / statvfs в секундах")


class LoggingSettings(BaseSettings):
    """Настройки логирования."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False
    )

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    file: Optional[Path] = None


class Settings(BaseSettings):
    """Главный класс настроек VolumeScaler Controller."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    app: AppSettings = Field(default_factory=AppSettings)
    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    leader_election: LeaderElectionSettings = Field(default_factory=LeaderElectionSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    workqueue: WorkQueueSettings = Field(default_factory=WorkQueueSettings)
    change_feed: ChangeFeedSettings = Field(default_factory=ChangeFeedSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache
def get_settings() -> Settings:
    """
    Получить экземпляр настроек.

    Создаётся при первом вызове (в entry point). Ошибки валидации
    (например отсутствие NODE_NAME / POD_NAME) пробрасываются вызывающему.

    Returns:
        Settings: Конфигурация приложения
    """
    return Settings()
