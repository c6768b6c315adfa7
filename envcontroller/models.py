"""
Data model for feature environments, their resources and promotions.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentStatus(str, Enum):
    """Lifecycle states of a feature environment."""

    PROVISIONING = "Provisioning"
    ACTIVE = "Active"
    DRAINING = "Draining"
    DESTROYED = "Destroyed"


class EventKind(str, Enum):
    """Source-control branch events the controller reacts to."""

    CREATED = "created"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass(frozen=True)
class ResourceSet:
    """
    Cloud resources backing one feature environment.

    Tags are passed verbatim to the infrastructure backend and always contain
    featureId, service, team and env.
    """

    db_name: str
    queue_name: str
    bucket_name: str
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def names(self) -> tuple[str, str, str]:
        return (self.db_name, self.queue_name, self.bucket_name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeatureEnvironment:
    """
    One ephemeral environment for a (service, feature id) pair.

    Owned by the LifecycleManager; only the manager changes `status`.
    """

    feature_id: str
    service_name: str
    namespace: str
    resources: ResourceSet
    branch: str = ""
    created_at: datetime = field(default_factory=utcnow)
    ttl: timedelta = field(default_factory=lambda: timedelta(hours=72))
    status: EnvironmentStatus = EnvironmentStatus.PROVISIONING
    locked: bool = False
    ttl_extended: bool = False
    deletion_started: bool = False
    drain_reason: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.service_name, self.feature_id)

    @property
    def owner(self) -> str:
        """Name registry owner string for this environment."""
        return f"{self.service_name}/{self.feature_id}"

    @property
    def expires_at(self) -> datetime:
        return self.created_at + self.ttl

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "service_name": self.service_name,
            "namespace": self.namespace,
            "branch": self.branch,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ttl_seconds": int(self.ttl.total_seconds()),
            "locked": self.locked,
            "drain_reason": self.drain_reason,
            "resources": self.resources.to_dict(),
        }


@dataclass(frozen=True)
class PromotionRecord:
    """Audit entry for one branch merge."""

    branch: str
    from_env: str
    to_env: str
    timestamp: datetime
    approved_by: str | None = None
    target_branch: str = ""
    status: str = "promoted"
    delivery_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromotionRecord:
        return cls(
            branch=data["branch"],
            from_env=data["from_env"],
            to_env=data["to_env"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            approved_by=data.get("approved_by"),
            target_branch=data.get("target_branch", ""),
            status=data.get("status", "promoted"),
            delivery_id=data.get("delivery_id"),
        )


@dataclass(frozen=True)
class BranchEvent:
    """Normalised source-control event."""

    kind: EventKind
    branch: str
    target_branch: str | None = None
    pr_number: int | None = None
    sender: str | None = None
    delivery_id: str | None = None
