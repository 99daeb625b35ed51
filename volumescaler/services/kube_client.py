"""
Kubernetes API Client для VolumeScaler Controller.

Async REST клиент поверх httpx к Kubernetes API server:
- VolumeScaler CR: list, watch, get, merge patch status sub-resource
- PersistentVolumeClaim: get, merge patch spec.resources.requests.storage
- Pod: list (для поиска mount path volume)
- coordination.k8s.io/v1 Lease: get, create, replace (Leader Election)

Ответы API декодируются в типизированные schemas на этой границе.

Ошибки:
- 404 → NotFoundError
- 409 → ConflictError
- 410 → ResourceExpiredError
- прочие HTTP/transport ошибки → KubernetesApiError (transient)

ВАЖНО: Использует httpx.AsyncClient, все вызовы неблокирующие.
"""

import json
import ssl
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import httpx
from pydantic import ValidationError

from volumescaler.core.config import KubernetesSettings
from volumescaler.core.exceptions import (
    ConfigurationError,
    ConflictError,
    KubernetesApiError,
    NotFoundError,
    ResourceExpiredError,
)
from volumescaler.core.logging import get_logger
from volumescaler.schemas.lease import LeaderElectionRecord
from volumescaler.schemas.volume_scaler import (
    ObjectMeta,
    PersistentVolumeClaim,
    Pod,
    VolumeScaler,
)

logger = get_logger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


@dataclass
class WatchEvent:
    """
    Событие watch stream.

    Attributes:
        type: ADDED | MODIFIED | DELETED | BOOKMARK | ERROR
        metadata: Metadata объекта (None для ERROR)
        status: Kubernetes Status объект для ERROR событий
    """
    type: str
    metadata: Optional[ObjectMeta] = None
    status: Optional[dict] = None


@dataclass
class LeaseObject:
    """Lease record вместе с resourceVersion для optimistic concurrency."""
    record: LeaderElectionRecord
    resource_version: Optional[str]


class ServiceAccountTokenAuth(httpx.Auth):
    """
    Bearer token из файла service account.

    Bound service account tokens ротируются kubelet, поэтому файл
    перечитывается не реже refresh_interval секунд.
    """

    def __init__(self, token_path: Path, refresh_interval: float = 60.0):
        self._token_path = token_path
        self._refresh_interval = refresh_interval
        self._token: Optional[str] = None
        self._loaded_at = 0.0

    def _current_token(self) -> str:
        now = time.monotonic()
        if self._token is None or now - self._loaded_at >= self._refresh_interval:
            self._token = self._token_path.read_text(encoding="utf-8").strip()
            self._loaded_at = now
        return self._token

    def auth_flow(self, request: httpx.Request):
        request.headers["Authorization"] = f"Bearer {self._current_token()}"
        yield request


class KubernetesClient:
    """
    HTTP клиент Kubernetes API.

    Usage:
        client = KubernetesClient(settings.kubernetes)
        await client.initialize()

        vs = await client.get_volume_scaler("default", "data-scaler")

        await client.close()
    """

    def __init__(
        self,
        config: KubernetesSettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Инициализация клиента.

        Args:
            config: Настройки доступа к API server (KUBERNETES_*)
            http_client: Готовый httpx клиент (для тестов)
        """
        self._config = config
        self._http_client = http_client
        self._owns_client = http_client is None

        self._crd_prefix = f"/apis/{config.group}/{config.version}"

    async def initialize(self) -> None:
        """
        Создание httpx.AsyncClient с in-cluster credentials.

        Raises:
            ConfigurationError: Нет адреса API server или credentials
        """
        if self._http_client is not None:
            return

        base_url = self._config.base_url
        if not base_url:
            raise ConfigurationError(
                "Kubernetes API server address is not configured "
                "(KUBERNETES_SERVICE_HOST or KUBERNETES_API_URL)"
            )

        auth = None
        if self._config.token_path.exists():
            auth = ServiceAccountTokenAuth(self._config.token_path)
        else:
            logger.warning(
                "Service account token not found, using anonymous access",
                extra={"token_path": str(self._config.token_path)}
            )

        verify: Union[bool, ssl.SSLContext] = self._config.verify_ssl
        if self._config.verify_ssl and self._config.ca_path.exists():
            verify = ssl.create_default_context(cafile=str(self._config.ca_path))

        self._http_client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            verify=verify,
            timeout=httpx.Timeout(self._config.timeout),
            headers={"Accept": "application/json"},
        )
        self._owns_client = True

        logger.info(
            "Kubernetes client initialized",
            extra={"api_server": base_url}
        )

    async def close(self) -> None:
        """Закрытие HTTP клиента."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
        logger.info("Kubernetes client closed")

    # ========== Low-level ==========

    @property
    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise KubernetesApiError("Client not initialized. Call initialize() first.")
        return self._http_client

    @staticmethod
    def _raise_for_status(response: httpx.Response, body: Optional[dict] = None) -> None:
        """Маппинг HTTP статуса в иерархию исключений."""
        if response.status_code < 400:
            return

        if body is None:
            try:
                body = response.json()
            except ValueError:
                body = {}
        message = body.get("message") if isinstance(body, dict) else None
        message = message or f"Kubernetes API returned {response.status_code}"
        reason = body.get("reason") if isinstance(body, dict) else None

        if response.status_code == 404:
            raise NotFoundError(message)
        if response.status_code == 409:
            raise ConflictError(message)
        if response.status_code == 410:
            raise ResourceExpiredError(message)
        raise KubernetesApiError(message, status_code=response.status_code, reason=reason)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        content_type: Optional[str] = None,
    ) -> dict:
        headers = {}
        content = None
        if json_body is not None:
            headers["Content-Type"] = content_type or "application/json"
            content = json.dumps(json_body)

        try:
            response = await self._client.request(
                method, path, params=params, content=content, headers=headers
            )
        except httpx.RequestError as e:
            raise KubernetesApiError(
                f"Kubernetes API request failed: {e}",
                details={"method": method, "path": path}
            ) from e

        self._raise_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            raise KubernetesApiError(
                f"Invalid JSON in Kubernetes API response: {e}",
                status_code=response.status_code
            ) from e

    def _volume_scaler_path(
        self,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        subresource: Optional[str] = None,
    ) -> str:
        path = self._crd_prefix
        if namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{self._config.plural}"
        if name:
            path += f"/{name}"
        if subresource:
            path += f"/{subresource}"
        return path

    # ========== VolumeScaler ==========

    async def list_volume_scalers(self) -> tuple[list[ObjectMeta], str]:
        """
        LIST всех VolumeScaler во всех namespaces.

        Returns:
            tuple: (metadata объектов, resourceVersion списка для watch)
        """
        data = await self._request("GET", self._volume_scaler_path())

        items = []
        for item in data.get("items") or []:
            try:
                items.append(ObjectMeta.model_validate(item.get("metadata") or {}))
            except ValidationError as e:
                logger.warning(
                    "Skipping VolumeScaler with invalid metadata",
                    extra={"error": str(e)}
                )

        resource_version = (data.get("metadata") or {}).get("resourceVersion", "")
        return items, resource_version

    async def watch_volume_scalers(
        self,
        resource_version: str,
    ) -> AsyncIterator[WatchEvent]:
        """
        WATCH VolumeScaler начиная с resource_version.

        Stream завершается по server-side timeoutSeconds или разрыву соединения.

        Raises:
            ResourceExpiredError: resource_version устарел (нужен re-list)
            KubernetesApiError: Ошибка watch запроса
        """
        params = {
            "watch": "true",
            "allowWatchBookmarks": "true",
            "timeoutSeconds": str(self._config.watch_timeout_seconds),
        }
        if resource_version:
            params["resourceVersion"] = resource_version

        # read timeout отключён: watch stream может молчать до timeoutSeconds
        timeout = httpx.Timeout(self._config.timeout, read=None)

        try:
            async with self._client.stream(
                "GET", self._volume_scaler_path(), params=params, timeout=timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response)

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    yield self._decode_watch_event(line)
        except httpx.RequestError as e:
            raise KubernetesApiError(f"Watch stream failed: {e}") from e

    @staticmethod
    def _decode_watch_event(line: str) -> WatchEvent:
        try:
            payload = json.loads(line)
        except ValueError as e:
            raise KubernetesApiError(f"Malformed watch event: {e}") from e

        event_type = payload.get("type", "")
        obj = payload.get("object") or {}

        if event_type == "ERROR":
            code = obj.get("code")
            if code == 410:
                raise ResourceExpiredError(obj.get("message") or "Watch resource version expired")
            return WatchEvent(type=event_type, status=obj)

        try:
            # BOOKMARK содержит только metadata.resourceVersion
            metadata = ObjectMeta.model_validate(obj.get("metadata") or {})
        except ValidationError as e:
            raise KubernetesApiError(f"Malformed watch event object: {e}") from e
        return WatchEvent(type=event_type, metadata=metadata)

    async def get_volume_scaler(self, namespace: str, name: str) -> VolumeScaler:
        """
        GET VolumeScaler.

        Raises:
            NotFoundError: Объект удалён
            PolicyParseError: Объект не соответствует схеме
        """
        data = await self._request("GET", self._volume_scaler_path(namespace, name))
        return VolumeScaler.from_api(data)

    async def patch_volume_scaler_status(self, namespace: str, name: str, status: dict) -> None:
        """
        Merge patch status sub-resource.

        Патч содержит только изменяемые поля, остальные поля status не трогаются.
        """
        await self._request(
            "PATCH",
            self._volume_scaler_path(namespace, name, "status"),
            json_body={"status": status},
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )

    # ========== Core API ==========

    async def get_persistent_volume_claim(self, namespace: str, name: str) -> PersistentVolumeClaim:
        """GET PersistentVolumeClaim."""
        data = await self._request(
            "GET", f"/api/v1/namespaces/{namespace}/persistentvolumeclaims/{name}"
        )
        try:
            return PersistentVolumeClaim.model_validate(data)
        except ValidationError as e:
            raise KubernetesApiError(f"Invalid PersistentVolumeClaim '{name}': {e}") from e

    async def patch_persistent_volume_claim_storage(
        self,
        namespace: str,
        name: str,
        size: str,
    ) -> None:
        """
        Size-increase request: merge patch spec.resources.requests.storage.

        Args:
            size: Новый размер в формате quantity ("7Gi")
        """
        patch = {
            "spec": {
                "resources": {
                    "requests": {
                        "storage": size,
                    },
                },
            },
        }
        await self._request(
            "PATCH",
            f"/api/v1/namespaces/{namespace}/persistentvolumeclaims/{name}",
            json_body=patch,
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )

    async def list_pods(
        self,
        namespace: str,
        field_selector: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[Pod]:
        """LIST Pods в namespace."""
        params = {}
        if field_selector:
            params["fieldSelector"] = field_selector
        if label_selector:
            params["labelSelector"] = label_selector

        data = await self._request("GET", f"/api/v1/namespaces/{namespace}/pods", params=params)

        pods = []
        for item in data.get("items") or []:
            try:
                pods.append(Pod.model_validate(item))
            except ValidationError as e:
                logger.debug("Skipping undecodable pod", extra={"error": str(e)})
        return pods

    # ========== Lease ==========

    @staticmethod
    def _lease_path(namespace: str, name: Optional[str] = None) -> str:
        path = f"/apis/coordination.k8s.io/v1/namespaces/{namespace}/leases"
        if name:
            path += f"/{name}"
        return path

    @staticmethod
    def _decode_lease(data: dict) -> LeaseObject:
        try:
            record = LeaderElectionRecord.model_validate(data.get("spec") or {})
        except ValidationError as e:
            raise KubernetesApiError(f"Invalid Lease object: {e}") from e
        return LeaseObject(
            record=record,
            resource_version=(data.get("metadata") or {}).get("resourceVersion"),
        )

    async def get_lease(self, namespace: str, name: str) -> LeaseObject:
        """GET Lease."""
        data = await self._request("GET", self._lease_path(namespace, name))
        return self._decode_lease(data)

    async def create_lease(
        self,
        namespace: str,
        name: str,
        record: LeaderElectionRecord,
    ) -> LeaseObject:
        """
        CREATE Lease.

        Raises:
            ConflictError: Lease уже существует (создан другой репликой)
        """
        body = {
            "apiVersion": "coordination.k8s.io/v1",
            "kind": "Lease",
            "metadata": {"name": name, "namespace": namespace},
            "spec": record.to_lease_spec(),
        }
        data = await self._request("POST", self._lease_path(namespace), json_body=body)
        return self._decode_lease(data)

    async def replace_lease(
        self,
        namespace: str,
        name: str,
        record: LeaderElectionRecord,
        resource_version: Optional[str],
    ) -> LeaseObject:
        """
        PUT Lease с optimistic concurrency.

        Raises:
            ConflictError: Lease изменён другой репликой после чтения
        """
        metadata = {"name": name, "namespace": namespace}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        body = {
            "apiVersion": "coordination.k8s.io/v1",
            "kind": "Lease",
            "metadata": metadata,
            "spec": record.to_lease_spec(),
        }
        data = await self._request("PUT", self._lease_path(namespace, name), json_body=body)
        return self._decode_lease(data)
