"""
Lease record для Leader Election.

LeaderElectionRecord - backend-независимое представление lease:
holder identity + время получения/продления + длительность.
Для Kubernetes backend маппится на coordination.k8s.io/v1 Lease.spec.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# MicroTime формат Kubernetes (RFC3339 с микросекундами)
MICRO_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_micro_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(MICRO_TIME_FORMAT)


class LeaderElectionRecord(BaseModel):
    """
    Состояние lease.

    Attributes:
        holder_identity: Identity текущего владельца ("" - lease свободен)
        lease_duration_seconds: Сколько lease действителен после renew_time
        acquire_time: Когда текущий владелец получил lease
        renew_time: Последнее продление
        lease_transitions: Количество смен владельца
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    holder_identity: Optional[str] = Field(None, alias="holderIdentity")
    lease_duration_seconds: Optional[int] = Field(None, alias="leaseDurationSeconds")
    acquire_time: Optional[datetime] = Field(None, alias="acquireTime")
    renew_time: Optional[datetime] = Field(None, alias="renewTime")
    lease_transitions: int = Field(0, alias="leaseTransitions")

    def is_held_by(self, identity: str) -> bool:
        return bool(self.holder_identity) and self.holder_identity == identity

    def expires_at(self) -> Optional[datetime]:
        """Момент истечения lease (None если lease никогда не продлевался)."""
        if self.renew_time is None or self.lease_duration_seconds is None:
            return None
        renew_time = self.renew_time
        if renew_time.tzinfo is None:
            renew_time = renew_time.replace(tzinfo=timezone.utc)
        return renew_time + timedelta(seconds=self.lease_duration_seconds)

    def is_expired(self, now: datetime) -> bool:
        """Lease свободен для захвата: нет владельца или истёк срок."""
        if not self.holder_identity:
            return True
        expires_at = self.expires_at()
        return expires_at is None or expires_at <= now

    def to_lease_spec(self) -> dict:
        """Сериализация в coordination.k8s.io/v1 LeaseSpec."""
        spec: dict = {
            "holderIdentity": self.holder_identity or "",
            "leaseTransitions": self.lease_transitions,
        }
        if self.lease_duration_seconds is not None:
            spec["leaseDurationSeconds"] = self.lease_duration_seconds
        if self.acquire_time is not None:
            spec["acquireTime"] = format_micro_time(self.acquire_time)
        if self.renew_time is not None:
            spec["renewTime"] = format_micro_time(self.renew_time)
        return spec
