"""
Utilization Probe: измерение заполненности смонтированного volume.

Два шага:
1. MountPathResolver - поиск пути монтирования PVC на этой node
   (pod на NODE_NAME, использующий claim → kubelet volume directory)
2. UtilizationProbe - (used, total) файловой системы по пути

Backends probe:
- DfCommandProbe: `df -B1 <path>` в subprocess (default)
- StatvfsProbe: os.statvfs в thread pool

Ошибки:
- MountPathNotFoundError - volume не смонтирован на этой node (benign)
- ProbeQueryError - измерение не удалось (transient)
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from volumescaler.core.config import ProbeBackend, ProbeSettings
from volumescaler.core.exceptions import MountPathNotFoundError, ProbeQueryError
from volumescaler.core.logging import get_logger
from volumescaler.core.units import utilization_percent
from volumescaler.schemas.volume_scaler import PersistentVolumeClaim, Pod
from volumescaler.services.kube_client import KubernetesClient

logger = get_logger(__name__)

CSI_VOLUME_PLUGIN_DIR = "kubernetes.io~csi"


@dataclass(frozen=True)
class DiskUsage:
    """Заполненность файловой системы в байтах."""
    used_bytes: int
    total_bytes: int

    @property
    def percent(self) -> float:
        return utilization_percent(self.used_bytes, self.total_bytes)


class UtilizationProbe(Protocol):
    async def measure(self, mount_path: Path) -> DiskUsage:
        ...


def parse_df_output(output: str) -> DiskUsage:
    """
    Парсинг вывода `df -B1 <path>`.

    Filesystem      1B-blocks      Used  Available Use% Mounted on
    /dev/nvme1n1   5368709120 4026531840 1342177280  75% /var/lib/...

    Длинное имя filesystem df переносит на отдельную строку,
    поэтому строки после заголовка объединяются.

    Raises:
        ProbeQueryError: Неожиданный формат вывода
    """
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ProbeQueryError(
            "Unexpected df output format",
            details={"output": output}
        )

    fields = " ".join(lines[1:]).split()
    if len(fields) < 5:
        raise ProbeQueryError(
            "df output does not contain enough fields",
            details={"fields": fields}
        )

    try:
        total_bytes = int(fields[1])
        used_bytes = int(fields[2])
    except ValueError as e:
        raise ProbeQueryError(
            f"Error parsing df output: {e}",
            details={"fields": fields}
        ) from e

    return DiskUsage(used_bytes=used_bytes, total_bytes=total_bytes)


class DfCommandProbe:
    """Probe через `df -B1`."""

    def __init__(self, df_command: str = "df", timeout: float = 10.0):
        self._df_command = df_command
        self._timeout = timeout

    async def measure(self, mount_path: Path) -> DiskUsage:
        # stat зависшего network mount блокирует, поэтому вне event loop
        try:
            exists = await asyncio.wait_for(
                asyncio.to_thread(mount_path.exists),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProbeQueryError(
                f"Mount path check timed out after {self._timeout}s",
                details={"mount_path": str(mount_path)}
            ) from e

        if not exists:
            raise MountPathNotFoundError(
                f"Mount path does not exist: {mount_path}",
                details={"mount_path": str(mount_path)}
            )

        try:
            process = await asyncio.create_subprocess_exec(
                self._df_command, "-B1", str(mount_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeQueryError(f"Error executing df command: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProbeQueryError(
                f"df command timed out after {self._timeout}s",
                details={"mount_path": str(mount_path)}
            ) from e

        if process.returncode != 0:
            raise ProbeQueryError(
                f"df command failed with exit code {process.returncode}",
                details={
                    "mount_path": str(mount_path),
                    "stderr": stderr.decode("utf-8", errors="replace").strip(),
                }
            )

        return parse_df_output(stdout.decode("utf-8", errors="replace"))


class StatvfsProbe:
    """Probe через os.statvfs (без внешней команды)."""

    def __init__(self, timeout: float = 10.0):
        self._timeout = timeout

    async def measure(self, mount_path: Path) -> DiskUsage:
        try:
            stats = await asyncio.wait_for(
                asyncio.to_thread(os.statvfs, str(mount_path)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProbeQueryError(
                f"statvfs timed out after {self._timeout}s",
                details={"mount_path": str(mount_path)}
            ) from e
        except FileNotFoundError as e:
            raise MountPathNotFoundError(
                f"Mount path does not exist: {mount_path}",
                details={"mount_path": str(mount_path)}
            ) from e
        except OSError as e:
            raise ProbeQueryError(f"statvfs failed: {e}") from e

        # Те же значения, что показывает df: used = blocks - free
        total_bytes = stats.f_blocks * stats.f_frsize
        used_bytes = (stats.f_blocks - stats.f_bfree) * stats.f_frsize
        return DiskUsage(used_bytes=used_bytes, total_bytes=total_bytes)


def build_probe(config: ProbeSettings) -> UtilizationProbe:
    """Создание probe по PROBE_BACKEND."""
    if config.backend == ProbeBackend.STATVFS:
        return StatvfsProbe(timeout=config.timeout)
    return DfCommandProbe(df_command=config.df_command, timeout=config.timeout)


class MountPathResolver:
    """
    Поиск пути монтирования PVC на текущей node.

    {kubelet_root}/pods/{podUID}/volumes/kubernetes.io~csi/{pvName}/mount
    """

    def __init__(
        self,
        kube_client: KubernetesClient,
        node_name: str,
        kubelet_root: Path = Path("/var/lib/kubelet"),
    ):
        self._kube_client = kube_client
        self._node_name = node_name
        self._kubelet_root = kubelet_root

    def mount_path(self, pod_uid: str, pvc: PersistentVolumeClaim) -> Path:
        return (
            self._kubelet_root / "pods" / pod_uid / "volumes"
            / CSI_VOLUME_PLUGIN_DIR / pvc.volume_dir_name / "mount"
        )

    async def resolve(self, pvc: PersistentVolumeClaim) -> Path:
        """
        Путь монтирования PVC.

        Raises:
            MountPathNotFoundError: На этой node нет pod, использующего PVC
            KubernetesApiError: Ошибка LIST pods
        """
        namespace = pvc.metadata.namespace
        pods = await self._kube_client.list_pods(
            namespace,
            field_selector=f"spec.nodeName={self._node_name}",
        )

        candidates = [pod for pod in pods if pod.mounts_claim(pvc.metadata.name)]
        pod = self._pick_pod(candidates)
        if pod is None or not pod.metadata.uid:
            raise MountPathNotFoundError(
                f"No pods on node '{self._node_name}' use PVC '{pvc.metadata.name}'",
                details={
                    "namespace": namespace,
                    "pvc": pvc.metadata.name,
                    "node": self._node_name,
                }
            )

        path = self.mount_path(pod.metadata.uid, pvc)
        logger.debug(
            "Resolved volume mount path",
            extra={
                "pvc": pvc.metadata.name,
                "pod": pod.metadata.name,
                "mount_path": str(path),
            }
        )
        return path

    @staticmethod
    def _pick_pod(candidates: list[Pod]) -> Optional[Pod]:
        running = [pod for pod in candidates if pod.status.phase == "Running"]
        if running:
            return running[0]
        return candidates[0] if candidates else None
