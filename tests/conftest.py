"""
Pytest configuration и shared fixtures для VolumeScaler Controller tests.

Provides:
- Identity environment (NODE_NAME / POD_NAME) до импорта модулей приложения
- Settings fixtures
- In-memory Kubernetes API (FakeKubernetesClient) для reconciler/controller тестов
- Probe и resolver stubs
"""

import copy
import os
from pathlib import Path

# Set default test environment variables BEFORE importing app modules
os.environ.setdefault("NODE_NAME", "worker-1")
os.environ.setdefault("POD_NAME", "volumescaler-controller-0")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest

from volumescaler.core.config import (
    ChangeFeedSettings,
    ControllerSettings,
    LeaderElectionSettings,
    WorkQueueSettings,
)
from volumescaler.core.exceptions import (
    KubernetesApiError,
    MountPathNotFoundError,
    NotFoundError,
)
from volumescaler.core.units import GI
from volumescaler.schemas.volume_scaler import PersistentVolumeClaim, VolumeScaler
from volumescaler.services.utilization_probe import DiskUsage


# ==========================================
# Fakes
# ==========================================

class FakeKubernetesClient:
    """
    In-memory Kubernetes API.

    Хранит VolumeScaler и PVC как JSON dicts (как их вернул бы API server),
    применяет merge patches и записывает их для проверок.
    """

    def __init__(self):
        self.volume_scalers: dict[tuple[str, str], dict] = {}
        self.pvcs: dict[tuple[str, str], dict] = {}
        self.pvc_patches: list[tuple[str, str, str]] = []
        self.status_patches: list[tuple[str, str, dict]] = []

        self.fail_pvc_patch = False
        self.fail_status_patch = False
        self.fail_get_volume_scaler = False

    # ----- setup helpers -----

    def add_volume_scaler(self, obj: dict) -> None:
        meta = obj["metadata"]
        self.volume_scalers[(meta.get("namespace", "default"), meta["name"])] = obj

    def add_pvc(self, obj: dict) -> None:
        meta = obj["metadata"]
        self.pvcs[(meta.get("namespace", "default"), meta["name"])] = obj

    # ----- KubernetesClient API -----

    async def get_volume_scaler(self, namespace: str, name: str) -> VolumeScaler:
        if self.fail_get_volume_scaler:
            raise KubernetesApiError("API server unavailable", status_code=503)
        obj = self.volume_scalers.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"volumescalers '{name}' not found")
        return VolumeScaler.from_api(copy.deepcopy(obj))

    async def patch_volume_scaler_status(self, namespace: str, name: str, status: dict) -> None:
        if self.fail_status_patch:
            raise KubernetesApiError("status patch failed", status_code=500)
        self.status_patches.append((namespace, name, dict(status)))
        obj = self.volume_scalers[(namespace, name)]
        merged = dict(obj.get("status") or {})
        merged.update(status)
        obj["status"] = merged

    async def get_persistent_volume_claim(self, namespace: str, name: str) -> PersistentVolumeClaim:
        obj = self.pvcs.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"persistentvolumeclaims '{name}' not found")
        return PersistentVolumeClaim.model_validate(copy.deepcopy(obj))

    async def patch_persistent_volume_claim_storage(self, namespace: str, name: str, size: str) -> None:
        if self.fail_pvc_patch:
            raise KubernetesApiError("pvc patch failed", status_code=500)
        self.pvc_patches.append((namespace, name, size))
        self.pvcs[(namespace, name)]["spec"]["resources"]["requests"]["storage"] = size


class StaticResolver:
    """MountPathResolver stub: фиксированный путь или отсутствие mount."""

    def __init__(self, path: Path = Path("/var/lib/kubelet/pods/uid/volumes/kubernetes.io~csi/pvc-1/mount")):
        self.path = path
        self.mounted = True
        self.calls = 0

    async def resolve(self, pvc: PersistentVolumeClaim) -> Path:
        self.calls += 1
        if not self.mounted:
            raise MountPathNotFoundError(f"No pods use PVC '{pvc.metadata.name}'")
        return self.path


class StaticProbe:
    """UtilizationProbe stub: utilization задаётся в процентах."""

    def __init__(self, percent: float = 0.0, total_bytes: int = 5 * GI):
        self.total_bytes = total_bytes
        self.percent = percent
        self.error = None
        self.calls = 0

    async def measure(self, mount_path: Path) -> DiskUsage:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return DiskUsage(
            used_bytes=int(self.total_bytes * self.percent / 100),
            total_bytes=self.total_bytes,
        )


# ==========================================
# Object factories
# ==========================================

def build_volume_scaler(
    name: str = "data-scaler",
    namespace: str = "default",
    pvc_name: str = "data",
    threshold: str = "70%",
    scale: str = "30%",
    max_size: str = "10Gi",
    status: dict = None,
    cooldown=None,
) -> dict:
    spec = {
        "pvcName": pvc_name,
        "threshold": threshold,
        "scale": scale,
        "maxSize": max_size,
    }
    if cooldown is not None:
        spec["cooldown"] = cooldown

    obj = {
        "apiVersion": "zghanem.aws/v1",
        "kind": "VolumeScaler",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "resourceVersion": "100",
        },
        "spec": spec,
    }
    if status is not None:
        obj["status"] = status
    return obj


def build_pvc(
    name: str = "data",
    namespace: str = "default",
    storage: str = "5Gi",
    capacity: str = None,
    uid: str = "1111-2222",
    volume_name: str = None,
) -> dict:
    obj = {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace, "uid": uid},
        "spec": {"resources": {"requests": {"storage": storage}}},
        "status": {"phase": "Bound"},
    }
    if volume_name:
        obj["spec"]["volumeName"] = volume_name
    if capacity:
        obj["status"]["capacity"] = {"storage": capacity}
    return obj


# ==========================================
# Fixtures
# ==========================================

@pytest.fixture
def fake_kube():
    """In-memory Kubernetes API."""
    return FakeKubernetesClient()


@pytest.fixture
def resolver():
    return StaticResolver()


@pytest.fixture
def probe():
    return StaticProbe()


@pytest.fixture
def volume_scaler_factory():
    """Фабрика VolumeScaler JSON объектов."""
    return build_volume_scaler


@pytest.fixture
def pvc_factory():
    """Фабрика PersistentVolumeClaim JSON объектов."""
    return build_pvc


@pytest.fixture
def controller_settings():
    return ControllerSettings(node_name="worker-1", pod_name="volumescaler-controller-0")


@pytest.fixture
def leader_election_settings():
    """Короткие таймауты для быстрых тестов."""
    return LeaderElectionSettings(
        lease_duration=0.3,
        renew_deadline=0.2,
        retry_period=0.02,
    )


@pytest.fixture
def workqueue_settings():
    return WorkQueueSettings()


@pytest.fixture
def change_feed_settings():
    return ChangeFeedSettings(
        resync_period=0,
        relist_backoff_base=0.01,
        relist_backoff_max=0.05,
    )
