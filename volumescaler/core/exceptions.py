"""
VolumeScaler Controller - Custom Exceptions.

Таксономия ошибок reconciliation loop:
- Fatal: ConfigurationError, LeadershipLostError, CacheSyncTimeoutError
- Transient (retry через Work Queue backoff): TransientError и наследники
- Terminal-per-cycle: PolicyParseError (policy сломана до исправления пользователем)
- Benign no-op: NotFoundError, MountPathNotFoundError
"""

from typing import Optional


class VolumeScalerException(Exception):
    """Базовое исключение VolumeScaler Controller."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Fatal Exceptions
class ConfigurationError(VolumeScalerException):
    """Невалидная или отсутствующая startup конфигурация."""
    pass


class LeadershipLostError(VolumeScalerException):
    """Лидерство потеряно после того как было получено."""
    pass


class CacheSyncTimeoutError(VolumeScalerException):
    """Change Feed не завершил initial sync за отведённое время."""
    pass


# Transient Exceptions
class TransientError(VolumeScalerException):
    """Временная ошибка, reconciliation будет повторён с backoff."""
    pass


class KubernetesApiError(TransientError):
    """
    Ошибка обращения к Kubernetes API.

    Attributes:
        status_code: HTTP статус (None для transport ошибок)
        reason: Kubernetes Status.reason (NotFound, Conflict, Expired, ...)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.reason = reason


class NotFoundError(KubernetesApiError):
    """Объект не найден (HTTP 404). Для reconciler - benign no-op."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=404, reason="NotFound", details=details)


class ConflictError(KubernetesApiError):
    """Optimistic concurrency conflict или объект уже существует (HTTP 409)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=409, reason="Conflict", details=details)


class ResourceExpiredError(KubernetesApiError):
    """resourceVersion слишком старый для watch (HTTP 410 Gone)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, status_code=410, reason="Expired", details=details)


class ProbeError(VolumeScalerException):
    """Базовое исключение utilization probe."""
    pass


class MountPathNotFoundError(ProbeError):
    """Mount path volume отсутствует на этой node - цикл пропускается."""
    pass


class ProbeQueryError(ProbeError, TransientError):
    """Ошибка выполнения запроса или невалидный вывод probe."""
    pass


# Terminal-per-cycle Exceptions
class PolicyParseError(VolumeScalerException):
    """
    Невалидные поля VolumeScaler policy.

    Не эскалируется в process failure: policy продолжает падать
    (с обычным rate limiter backoff) пока пользователь её не исправит.
    """

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.field = field


class SizeParseError(PolicyParseError):
    """Невалидная строка размера (например '10Gx')."""
    pass
