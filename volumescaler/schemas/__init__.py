"""
Schemas для VolumeScaler Controller.

Typed models объектов Kubernetes API и scaling policy.
"""

from volumescaler.schemas.lease import LeaderElectionRecord
from volumescaler.schemas.volume_scaler import (
    ObjectMeta,
    PersistentVolumeClaim,
    Pod,
    ScalingPolicy,
    VolumeScaler,
    VolumeScalerSpec,
    VolumeScalerStatus,
    VolumeSnapshot,
    parse_policy,
)

__all__ = [
    "LeaderElectionRecord",
    "ObjectMeta",
    "PersistentVolumeClaim",
    "Pod",
    "ScalingPolicy",
    "VolumeScaler",
    "VolumeScalerSpec",
    "VolumeScalerStatus",
    "VolumeSnapshot",
    "parse_policy",
]
