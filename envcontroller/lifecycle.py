"""
TTL and lifecycle management for feature environments.

State machine:

    Provisioning -> Active -> Draining -> Destroyed
         |                       ^  |
         +-----------------------+  +-> Active (teardown cancelled)

An environment drains on merge/close or TTL expiry, whichever comes first,
and is only marked Destroyed once its resources are confirmed gone.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from envcontroller.constants import DEFAULT_TTL_GRACE_HOURS, DEFAULT_TTL_HOURS
from envcontroller.exceptions import (
    EnvironmentExistsError,
    InvalidTransitionError,
    TeardownInProgressError,
    TTLExpiredWithActiveLock,
)
from envcontroller.logger import get_logger
from envcontroller.models import EnvironmentStatus, FeatureEnvironment, ResourceSet, utcnow

logger = get_logger(__name__)

TRANSITIONS = {
    EnvironmentStatus.PROVISIONING: {EnvironmentStatus.ACTIVE, EnvironmentStatus.DRAINING},
    EnvironmentStatus.ACTIVE: {EnvironmentStatus.DRAINING},
    EnvironmentStatus.DRAINING: {EnvironmentStatus.DESTROYED, EnvironmentStatus.ACTIVE},
    EnvironmentStatus.DESTROYED: set(),
}


class LifecycleManager:
    """
    Owns every FeatureEnvironment and all changes to its status.

    At most one non-destroyed environment exists per (service, feature id).
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(hours=DEFAULT_TTL_HOURS),
        grace: timedelta = timedelta(hours=DEFAULT_TTL_GRACE_HOURS),
    ):
        self.ttl = ttl
        self.grace = grace
        self._environments: dict[tuple[str, str], FeatureEnvironment] = {}
        self._lock = threading.RLock()

    def register(
        self,
        service_name: str,
        feature_id: str,
        namespace: str,
        resources: ResourceSet,
        branch: str = "",
        now: datetime | None = None,
    ) -> FeatureEnvironment:
        """
        Create a new environment in Provisioning state.

        Raises:
            EnvironmentExistsError: If a live environment already exists for the pair
        """
        now = now or utcnow()
        key = (service_name, feature_id)

        with self._lock:
            existing = self._environments.get(key)
            if existing is not None and existing.status != EnvironmentStatus.DESTROYED:
                raise EnvironmentExistsError(
                    f"Environment {existing.namespace} already exists ({existing.status.value})"
                )

            environment = FeatureEnvironment(
                feature_id=feature_id,
                service_name=service_name,
                namespace=namespace,
                resources=resources,
                branch=branch,
                created_at=now,
                ttl=self.ttl,
                updated_at=now,
            )
            self._environments[key] = environment

        logger.info(
            f"Registered environment: {namespace}",
            extra={
                "namespace": namespace,
                "feature_id": feature_id,
                "expires_at": environment.expires_at.isoformat(),
            },
        )
        return environment

    def get(self, service_name: str, feature_id: str) -> FeatureEnvironment | None:
        with self._lock:
            return self._environments.get((service_name, feature_id))

    def find_by_feature(self, feature_id: str) -> list[FeatureEnvironment]:
        with self._lock:
            return [env for env in self._environments.values() if env.feature_id == feature_id]

    def list(self, status: EnvironmentStatus | None = None) -> list[FeatureEnvironment]:
        with self._lock:
            environments = list(self._environments.values())
        if status is not None:
            environments = [env for env in environments if env.status == status]
        return sorted(environments, key=lambda env: env.key)

    def transition(
        self, environment: FeatureEnvironment, status: EnvironmentStatus, now: datetime | None = None
    ) -> None:
        """
        Move an environment to a new status.

        Raises:
            InvalidTransitionError: If the state machine does not allow the change
        """
        with self._lock:
            previous = environment.status
            if status not in TRANSITIONS[previous]:
                raise InvalidTransitionError(
                    f"{environment.namespace}: cannot go from {previous.value} to {status.value}"
                )
            environment.status = status
            environment.updated_at = now or utcnow()

        logger.info(
            f"{environment.namespace}: {previous.value} -> {status.value}",
            extra={"namespace": environment.namespace, "from": previous.value, "to": status.value},
        )

    def mark_active(self, environment: FeatureEnvironment) -> None:
        self.transition(environment, EnvironmentStatus.ACTIVE)

    def begin_drain(self, environment: FeatureEnvironment, reason: str) -> bool:
        """Start teardown. Returns False if the environment is already draining or destroyed."""
        with self._lock:
            if environment.status in (EnvironmentStatus.DRAINING, EnvironmentStatus.DESTROYED):
                return False
            environment.drain_reason = reason
            self.transition(environment, EnvironmentStatus.DRAINING)
        return True

    def mark_deletion_started(self, environment: FeatureEnvironment) -> None:
        """
        Record that resource deletion began; from here teardown cannot be cancelled.

        Raises:
            InvalidTransitionError: If the environment is not draining
        """
        with self._lock:
            if environment.status != EnvironmentStatus.DRAINING:
                raise InvalidTransitionError(
                    f"{environment.namespace}: deletion requires Draining, "
                    f"got {environment.status.value}"
                )
            environment.deletion_started = True

    def mark_destroyed(self, environment: FeatureEnvironment) -> None:
        """
        Raises:
            InvalidTransitionError: If deletion was never started
        """
        with self._lock:
            if not environment.deletion_started:
                raise InvalidTransitionError(
                    f"{environment.namespace}: cannot be destroyed before deletion has started"
                )
            self.transition(environment, EnvironmentStatus.DESTROYED)

    def cancel_teardown(self, environment: FeatureEnvironment) -> None:
        """
        Return a draining environment to Active.

        Raises:
            TeardownInProgressError: If resource deletion has already started
            InvalidTransitionError: If the environment is not draining
        """
        with self._lock:
            if environment.status != EnvironmentStatus.DRAINING:
                raise InvalidTransitionError(
                    f"{environment.namespace}: nothing to cancel ({environment.status.value})"
                )
            if environment.deletion_started:
                raise TeardownInProgressError(
                    f"{environment.namespace}: resource deletion already started"
                )
            environment.drain_reason = None
            self.transition(environment, EnvironmentStatus.ACTIVE)

    def set_locked(self, environment: FeatureEnvironment, locked: bool) -> None:
        with self._lock:
            environment.locked = locked
        logger.debug(
            f"{environment.namespace} {'locked' if locked else 'unlocked'}",
            extra={"namespace": environment.namespace},
        )

    def restore_extension(self, environment: FeatureEnvironment, expires_at: datetime) -> None:
        """Mark the one-time TTL extension as already granted, ending at expires_at."""
        with self._lock:
            environment.ttl = max(environment.ttl, expires_at - environment.created_at)
            environment.ttl_extended = True

    def check_ttl(self, environment: FeatureEnvironment, now: datetime | None = None) -> bool:
        """
        Decide whether an environment must drain because its TTL expired.

        A locked environment gets its deadline pushed back by the grace
        period once; after that it drains even if still locked.

        Returns:
            True if the environment should drain now

        Raises:
            TTLExpiredWithActiveLock: When the one-time delay is granted
        """
        now = now or utcnow()

        with self._lock:
            if environment.status not in (EnvironmentStatus.PROVISIONING, EnvironmentStatus.ACTIVE):
                return False
            if not environment.is_expired(now):
                return False
            if environment.locked and not environment.ttl_extended:
                environment.ttl += self.grace
                environment.ttl_extended = True
                raise TTLExpiredWithActiveLock(
                    f"{environment.namespace} is still in use at TTL expiry, "
                    f"teardown delayed until {environment.expires_at.isoformat()}"
                )
        return True

    def expired(self, now: datetime | None = None) -> list[FeatureEnvironment]:
        """Live environments whose TTL has passed (locks not considered)."""
        now = now or utcnow()
        return [
            env
            for env in self.list()
            if env.status in (EnvironmentStatus.PROVISIONING, EnvironmentStatus.ACTIVE)
            and env.is_expired(now)
        ]
