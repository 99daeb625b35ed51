"""
Unit tests для Kubernetes API Client.

Использует httpx.MockTransport вместо реального API server.

Тестирует:
- Пути и тела запросов (merge patch status / PVC storage, Lease)
- Маппинг HTTP статусов в исключения
- Decode watch stream (включая 410 Gone в ERROR событии)
- Service account token auth
"""

import json

import httpx
import pytest

from volumescaler.core.config import KubernetesSettings
from volumescaler.core.exceptions import (
    ConfigurationError,
    ConflictError,
    KubernetesApiError,
    NotFoundError,
    PolicyParseError,
    ResourceExpiredError,
)
from volumescaler.schemas.lease import LeaderElectionRecord
from volumescaler.services.kube_client import KubernetesClient, ServiceAccountTokenAuth


VS_PATH = "/apis/zghanem.aws/v1/volumescalers"


class RecordingHandler:
    """MockTransport handler: записывает запросы и отдаёт заданные ответы."""

    def __init__(self, responder):
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_client(responder) -> tuple[KubernetesClient, RecordingHandler]:
    handler = RecordingHandler(responder)
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://kubernetes.test",
    )
    return KubernetesClient(KubernetesSettings(), http_client=http_client), handler


def status_response(code: int, message: str, reason: str = "") -> httpx.Response:
    return httpx.Response(
        code,
        json={"kind": "Status", "code": code, "message": message, "reason": reason},
    )


# ============================================================================
# VOLUME SCALER
# ============================================================================

class TestVolumeScalerRequests:
    """Тесты запросов к VolumeScaler CRD."""

    @pytest.mark.asyncio
    async def test_list_volume_scalers(self):
        client, handler = make_client(lambda request: httpx.Response(200, json={
            "metadata": {"resourceVersion": "500"},
            "items": [
                {"metadata": {"name": "a", "namespace": "team-a"}},
                {"metadata": {"name": 123}},
                {"metadata": {"name": "b", "namespace": "team-b"}},
            ],
        }))

        items, resource_version = await client.list_volume_scalers()

        assert [meta.key for meta in items] == ["team-a/a", "team-b/b"]
        assert resource_version == "500"
        assert handler.last.url.path == VS_PATH

    @pytest.mark.asyncio
    async def test_get_volume_scaler(self, volume_scaler_factory):
        client, handler = make_client(
            lambda request: httpx.Response(200, json=volume_scaler_factory(namespace="team-a"))
        )

        vs = await client.get_volume_scaler("team-a", "data-scaler")

        assert vs.key == "team-a/data-scaler"
        assert handler.last.url.path == "/apis/zghanem.aws/v1/namespaces/team-a/volumescalers/data-scaler"

    @pytest.mark.asyncio
    async def test_get_volume_scaler_invalid_spec(self, volume_scaler_factory):
        obj = volume_scaler_factory()
        del obj["spec"]["maxSize"]
        client, _ = make_client(lambda request: httpx.Response(200, json=obj))

        with pytest.raises(PolicyParseError):
            await client.get_volume_scaler("default", "data-scaler")

    @pytest.mark.asyncio
    async def test_patch_status_uses_merge_patch(self):
        client, handler = make_client(lambda request: httpx.Response(200, json={}))

        await client.patch_volume_scaler_status("default", "data-scaler", {"reachedMaxSize": True})

        request = handler.last
        assert request.method == "PATCH"
        assert request.url.path == "/apis/zghanem.aws/v1/namespaces/default/volumescalers/data-scaler/status"
        assert request.headers["Content-Type"] == "application/merge-patch+json"
        assert json.loads(request.content) == {"status": {"reachedMaxSize": True}}


# ============================================================================
# CORE API
# ============================================================================

class TestCoreRequests:
    """Тесты запросов к PVC и Pods."""

    @pytest.mark.asyncio
    async def test_patch_pvc_storage(self):
        client, handler = make_client(lambda request: httpx.Response(200, json={}))

        await client.patch_persistent_volume_claim_storage("default", "data", "7Gi")

        request = handler.last
        assert request.method == "PATCH"
        assert request.url.path == "/api/v1/namespaces/default/persistentvolumeclaims/data"
        assert json.loads(request.content) == {
            "spec": {"resources": {"requests": {"storage": "7Gi"}}}
        }

    @pytest.mark.asyncio
    async def test_get_pvc(self):
        client, _ = make_client(lambda request: httpx.Response(200, json={
            "metadata": {"name": "data", "namespace": "default", "uid": "abc"},
            "spec": {"resources": {"requests": {"storage": "5Gi"}}},
            "status": {"capacity": {"storage": "5Gi"}},
        }))

        pvc = await client.get_persistent_volume_claim("default", "data")

        assert pvc.requested_storage == "5Gi"

    @pytest.mark.asyncio
    async def test_list_pods_field_selector(self):
        client, handler = make_client(lambda request: httpx.Response(200, json={
            "items": [{"metadata": {"name": "app-0", "uid": "u1"}, "spec": {"nodeName": "worker-1"}}],
        }))

        pods = await client.list_pods("default", field_selector="spec.nodeName=worker-1")

        assert [pod.metadata.name for pod in pods] == ["app-0"]
        assert handler.last.url.params["fieldSelector"] == "spec.nodeName=worker-1"


# ============================================================================
# ERRORS
# ============================================================================

class TestErrorMapping:
    """Тесты маппинга HTTP ошибок."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,exc_type", [
        (404, NotFoundError),
        (409, ConflictError),
        (410, ResourceExpiredError),
        (500, KubernetesApiError),
        (403, KubernetesApiError),
    ])
    async def test_status_codes(self, code, exc_type):
        client, _ = make_client(lambda request: status_response(code, "boom", "Reason"))

        with pytest.raises(exc_type) as exc_info:
            await client.get_volume_scaler("default", "data-scaler")

        assert exc_info.value.status_code == code
        assert exc_info.value.message == "boom"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def responder(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(responder)

        with pytest.raises(KubernetesApiError) as exc_info:
            await client.list_volume_scalers()

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(KubernetesApiError):
            await client.list_volume_scalers()

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        client = KubernetesClient(KubernetesSettings())

        with pytest.raises(KubernetesApiError):
            await client.list_volume_scalers()

    @pytest.mark.asyncio
    async def test_initialize_without_api_server(self):
        client = KubernetesClient(KubernetesSettings(service_host=None, api_url=None))

        with pytest.raises(ConfigurationError):
            await client.initialize()


# ============================================================================
# WATCH
# ============================================================================

def watch_body(*events) -> bytes:
    return "".join(json.dumps(event) + "\n" for event in events).encode()


class TestWatch:
    """Тесты watch stream."""

    @pytest.mark.asyncio
    async def test_decodes_events(self):
        body = watch_body(
            {"type": "ADDED", "object": {"metadata": {"name": "a", "namespace": "x", "resourceVersion": "11"}}},
            {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "12"}}},
            {"type": "DELETED", "object": {"metadata": {"name": "a", "namespace": "x", "resourceVersion": "13"}}},
        )
        client, handler = make_client(lambda request: httpx.Response(200, content=body))

        events = [event async for event in client.watch_volume_scalers("10")]

        assert [event.type for event in events] == ["ADDED", "BOOKMARK", "DELETED"]
        assert events[0].metadata.key == "x/a"
        assert events[1].metadata.resource_version == "12"

        params = handler.last.url.params
        assert params["watch"] == "true"
        assert params["resourceVersion"] == "10"
        assert params["allowWatchBookmarks"] == "true"

    @pytest.mark.asyncio
    async def test_gone_error_event(self):
        body = watch_body({
            "type": "ERROR",
            "object": {"kind": "Status", "code": 410, "message": "too old resource version"},
        })
        client, _ = make_client(lambda request: httpx.Response(200, content=body))

        with pytest.raises(ResourceExpiredError):
            async for _ in client.watch_volume_scalers("10"):
                pass

    @pytest.mark.asyncio
    async def test_other_error_event_passed_through(self):
        body = watch_body({"type": "ERROR", "object": {"code": 500, "message": "internal"}})
        client, _ = make_client(lambda request: httpx.Response(200, content=body))

        events = [event async for event in client.watch_volume_scalers("10")]

        assert events[0].type == "ERROR"
        assert events[0].status["code"] == 500

    @pytest.mark.asyncio
    async def test_watch_http_error(self):
        client, _ = make_client(lambda request: status_response(410, "Expired", "Expired"))

        with pytest.raises(ResourceExpiredError):
            async for _ in client.watch_volume_scalers("1"):
                pass

    @pytest.mark.asyncio
    async def test_malformed_line(self):
        client, _ = make_client(lambda request: httpx.Response(200, content=b"{not json\n"))

        with pytest.raises(KubernetesApiError):
            async for _ in client.watch_volume_scalers(""):
                pass


# ============================================================================
# LEASE
# ============================================================================

class TestLeaseRequests:
    """Тесты coordination.k8s.io Lease запросов."""

    @pytest.mark.asyncio
    async def test_replace_lease_sends_resource_version(self):
        def responder(request):
            body = json.loads(request.content)
            body["metadata"]["resourceVersion"] = "43"
            return httpx.Response(200, json=body)

        client, handler = make_client(responder)
        record = LeaderElectionRecord(holder_identity="pod-a", lease_duration_seconds=15)

        lease = await client.replace_lease("kube-system", "lock", record, "42")

        request = handler.last
        assert request.method == "PUT"
        assert request.url.path == "/apis/coordination.k8s.io/v1/namespaces/kube-system/leases/lock"
        sent = json.loads(request.content)
        assert sent["metadata"]["resourceVersion"] == "42"
        assert sent["spec"]["holderIdentity"] == "pod-a"
        assert lease.resource_version == "43"
        assert lease.record.holder_identity == "pod-a"

    @pytest.mark.asyncio
    async def test_create_lease_conflict(self):
        client, handler = make_client(lambda request: status_response(409, "already exists", "AlreadyExists"))
        record = LeaderElectionRecord(holder_identity="pod-a", lease_duration_seconds=15)

        with pytest.raises(ConflictError):
            await client.create_lease("kube-system", "lock", record)

        assert handler.last.method == "POST"
        assert handler.last.url.path == "/apis/coordination.k8s.io/v1/namespaces/kube-system/leases"


# ============================================================================
# AUTH
# ============================================================================

class TestServiceAccountTokenAuth:
    """Тесты bearer token auth."""

    def test_token_reloaded_after_interval(self, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("first\n")
        auth = ServiceAccountTokenAuth(token_file, refresh_interval=0)

        request = httpx.Request("GET", "https://kubernetes.test/api")
        next(auth.auth_flow(request))
        assert request.headers["Authorization"] == "Bearer first"

        token_file.write_text("second")
        request = httpx.Request("GET", "https://kubernetes.test/api")
        next(auth.auth_flow(request))
        assert request.headers["Authorization"] == "Bearer second"
