"""
Environment controller.

Reacts to branch events by creating, promoting and tearing down feature
environments. Environments are reconciled independently on a thread pool,
so one environment blocked on the infrastructure backend never holds up
the others.
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from envcontroller.constants import (
    DEFAULT_MAX_WORKERS,
    EPHEMERAL_ENV,
    FEATURE_ID_LABEL,
    LOCKED_LABEL,
    SERVICE_LABEL,
    TTL_EXTENDED_ANNOTATION,
)
from envcontroller.context import get_operation_id, operation_scope
from envcontroller.exceptions import (
    EnvControllerError,
    EnvironmentExistsError,
    GitHubError,
    InvalidTransitionError,
    NameCollisionError,
    TTLExpiredWithActiveLock,
)
from envcontroller.github_integration import GithubClient, build_environment_comment
from envcontroller.lifecycle import LifecycleManager
from envcontroller.logger import get_logger
from envcontroller.models import BranchEvent, EnvironmentStatus, EventKind, FeatureEnvironment
from envcontroller.naming import (
    feature_id_from_branch,
    is_feature_branch,
    namespace_name,
    resolve_resource_set,
)
from envcontroller.promotion import PromotionTracker
from envcontroller.provisioner import ResourceProvisioner
from envcontroller.reconciler import NamespaceReconciler
from envcontroller.registry import NameRegistry

logger = get_logger(__name__)

T = TypeVar("T")


class EnvironmentController:
    """Ties naming, provisioning, reconciliation, lifecycle and promotions together."""

    def __init__(
        self,
        services: list[dict[str, Any]],
        reconciler: NamespaceReconciler,
        provisioner: ResourceProvisioner,
        lifecycle: LifecycleManager | None = None,
        registry: NameRegistry | None = None,
        promotions: PromotionTracker | None = None,
        github: GithubClient | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.services = services
        self.reconciler = reconciler
        self.provisioner = provisioner
        self.lifecycle = lifecycle or LifecycleManager()
        self.registry = registry or NameRegistry()
        self.promotions = promotions or PromotionTracker()
        self.github = github
        self.max_workers = max_workers

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        reconciler: NamespaceReconciler,
        github: GithubClient | None = None,
    ) -> EnvironmentController:
        """Build a controller from a loaded configuration dict."""
        return cls(
            services=config["services"],
            reconciler=reconciler,
            provisioner=ResourceProvisioner.from_config(config["provisioner"]),
            lifecycle=LifecycleManager(
                ttl=timedelta(hours=config["ttl_hours"]),
                grace=timedelta(hours=config["ttl_grace_hours"]),
            ),
            promotions=PromotionTracker(config["environments"], config.get("promotions_file")),
            github=github,
            max_workers=config["max_workers"],
        )

    def service(self, name: str) -> dict[str, Any]:
        """
        Raises:
            EnvControllerError: If the service is not configured
        """
        for service in self.services:
            if service["name"] == name:
                return service
        raise EnvControllerError(f"Unknown service: {name}")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def handle_event(self, event: BranchEvent) -> bool:
        """
        Apply one branch event.

        Returns:
            True if every resulting operation succeeded
        """
        logger.info(
            f"Handling {event.kind.value} event for {event.branch}",
            extra={
                "event": event.kind.value,
                "branch": event.branch,
                "target_branch": event.target_branch,
                "delivery_id": event.delivery_id,
            },
        )

        if event.kind == EventKind.MERGED:
            self.promotions.record_merge(
                event.branch,
                event.target_branch or "",
                approved_by=event.sender,
                delivery_id=event.delivery_id,
            )

        if not is_feature_branch(event.branch):
            logger.info(
                f"{event.branch} is not a feature branch, no environment to manage",
                extra={"branch": event.branch},
            )
            return True

        feature_id = feature_id_from_branch(event.branch)

        if event.kind != EventKind.CREATED:
            try:
                for service in self.services:
                    self.adopt(service["name"], feature_id, branch=event.branch)
            except EnvControllerError as e:
                logger.error(
                    f"Could not look up environments for {event.branch}: {e}",
                    extra={"branch": event.branch, "error_type": type(e).__name__},
                )
                return False
            return self.teardown_feature(feature_id, reason=event.kind.value)

        results = self._run_concurrently(
            self.services,
            lambda service: self.create_environment(service["name"], feature_id, event.branch),
            label=lambda service: service["name"],
        )
        created = [result for result in results if isinstance(result, FeatureEnvironment)]
        if created:
            self._notify(event, created)
        return len(created) == len(results)

    def _notify(self, event: BranchEvent, environments: list[FeatureEnvironment]) -> None:
        if not self.github:
            return

        try:
            pr_number = event.pr_number or self.github.find_pull_request(event.branch)
            if pr_number is None:
                logger.info(
                    f"No open pull request for {event.branch}, skipping comment",
                    extra={"branch": event.branch},
                )
                return
            self.github.upsert_environment_comment(
                pr_number, build_environment_comment(environments)
            )
        except GitHubError as e:
            # Comments are informational only
            logger.warning(
                f"Failed to post GitHub comment: {e}",
                extra={"branch": event.branch, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Single environment operations
    # ------------------------------------------------------------------

    def create_environment(
        self, service_name: str, feature_id: str, branch: str = ""
    ) -> FeatureEnvironment:
        """
        Create (or re-reconcile) the environment of a service for a feature.

        Returns:
            The Active environment

        Raises:
            NameCollisionError: If a name is reserved by another environment
            EnvironmentExistsError: If the environment is being torn down
            ProvisionError, ManifestError, TemplateError, KubernetesError: On failure,
                after the partial environment has been torn down
        """
        service = self.service(service_name)
        start_time = time.perf_counter()

        existing = self.lifecycle.get(service_name, feature_id)
        if existing is not None and existing.status == EnvironmentStatus.ACTIVE:
            self.reconciler.reconcile(existing, service)
            return existing
        if existing is not None and existing.status != EnvironmentStatus.DESTROYED:
            raise EnvironmentExistsError(
                f"Environment {existing.namespace} is {existing.status.value}"
            )

        resources = resolve_resource_set(service_name, feature_id, service["team"], EPHEMERAL_ENV)
        namespace = namespace_name(service_name, feature_id)

        environment = self.lifecycle.register(
            service_name, feature_id, namespace, resources, branch=branch
        )

        try:
            self.registry.reserve(environment.owner, self._reserved_names(environment))
        except NameCollisionError:
            self._abandon(environment, reason="name-collision")
            raise

        try:
            self.provisioner.provision(resources)
            self.reconciler.reconcile(environment, service)
            self.lifecycle.mark_active(environment)
        except EnvControllerError as e:
            logger.error(
                f"Failed to create {namespace}, tearing down: {e}",
                extra={"namespace": namespace, "error_type": type(e).__name__},
            )
            try:
                self.teardown(environment, reason="failed")
            except EnvControllerError as cleanup_error:
                logger.error(
                    f"Cleanup of {namespace} failed: {cleanup_error}",
                    extra={"namespace": namespace, "error_type": type(cleanup_error).__name__},
                )
            raise

        logger.info(
            f"Environment ready: {namespace}",
            extra={
                "namespace": namespace,
                "feature_id": feature_id,
                "duration_seconds": round(time.perf_counter() - start_time, 3),
            },
        )
        return environment

    def adopt(
        self,
        service_name: str,
        feature_id: str,
        branch: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> FeatureEnvironment | None:
        """
        Start tracking an environment created by an earlier controller run.

        Names are deterministic, so the environment is found by looking up
        its namespace and backend resources. The lock label and any TTL
        extension already granted are read back from the namespace.

        Args:
            metadata: Namespace metadata if the caller already has it

        Returns:
            The tracked environment, or None if nothing exists for the pair

        Raises:
            KubernetesError, ProvisionError: If the lookup fails
            NameCollisionError: If its names are reserved by another environment
        """
        existing = self.lifecycle.get(service_name, feature_id)
        if existing is not None and existing.status != EnvironmentStatus.DESTROYED:
            return existing

        service = self.service(service_name)
        resources = resolve_resource_set(service_name, feature_id, service["team"], EPHEMERAL_ENV)
        namespace = namespace_name(service_name, feature_id)

        if metadata is None:
            metadata = self.reconciler.namespace_metadata(namespace)
        if metadata is None and not self.provisioner.exists(resources):
            return None

        environment = self.lifecycle.register(
            service_name,
            feature_id,
            namespace,
            resources,
            branch=branch,
            now=metadata["created_at"] if metadata else None,
        )
        try:
            self.registry.reserve(environment.owner, self._reserved_names(environment))
        except NameCollisionError:
            self._abandon(environment, reason="name-collision")
            raise
        self.lifecycle.mark_active(environment)
        if metadata:
            self._restore_lock(environment, metadata)

        logger.info(f"Adopted existing environment: {namespace}", extra={"namespace": namespace})
        return environment

    def _restore_lock(self, environment: FeatureEnvironment, metadata: dict[str, Any]) -> None:
        labels = metadata.get("labels") or {}
        self.lifecycle.set_locked(environment, labels.get(LOCKED_LABEL, "").lower() == "true")

        extended_until = (metadata.get("annotations") or {}).get(TTL_EXTENDED_ANNOTATION)
        if not extended_until:
            return
        try:
            expires_at = datetime.fromisoformat(extended_until)
        except ValueError:
            logger.warning(
                f"Ignoring malformed {TTL_EXTENDED_ANNOTATION} on {environment.namespace}: "
                f"{extended_until}",
                extra={"namespace": environment.namespace},
            )
            return
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        self.lifecycle.restore_extension(environment, expires_at)

    def recover_state(self) -> int:
        """
        Adopt every namespace labelled as managed by the controller.

        Returns:
            Number of environments adopted or already tracked

        Raises:
            KubernetesError: If namespaces cannot be listed
        """
        count = 0
        for namespace in self.reconciler.managed_namespaces():
            labels = namespace["labels"]
            service_name = labels.get(SERVICE_LABEL)
            feature_id = labels.get(FEATURE_ID_LABEL)

            if not service_name or not feature_id:
                logger.warning(
                    f"Namespace {namespace['name']} is missing controller labels, skipping",
                    extra={"namespace": namespace["name"]},
                )
                continue

            try:
                if self.adopt(service_name, feature_id, metadata=namespace):
                    count += 1
            except EnvControllerError as e:
                logger.warning(
                    f"Could not adopt {namespace['name']}: {e}",
                    extra={"namespace": namespace["name"], "error_type": type(e).__name__},
                )

        logger.info(f"Recovered {count} environments", extra={"environment_count": count})
        return count

    @staticmethod
    def _reserved_names(environment: FeatureEnvironment) -> list[tuple[str, str]]:
        resources = environment.resources
        return [
            ("namespace", environment.namespace),
            ("database", resources.db_name),
            ("queue", resources.queue_name),
            ("bucket", resources.bucket_name),
        ]

    def _abandon(self, environment: FeatureEnvironment, reason: str) -> None:
        """Retire an environment that never created anything."""
        self.lifecycle.begin_drain(environment, reason)
        self.lifecycle.mark_deletion_started(environment)
        self.lifecycle.mark_destroyed(environment)

    def teardown(self, environment: FeatureEnvironment, reason: str) -> bool:
        """
        Drain and destroy an environment.

        Once resource deletion has started it runs to completion; a failure
        leaves the environment Draining so the next sweep retries it.

        Returns:
            True if destroyed, False if teardown was cancelled before deletion

        Raises:
            ProvisionError, KubernetesError: If deletion fails
        """
        if environment.status == EnvironmentStatus.DESTROYED:
            return True

        self.lifecycle.begin_drain(environment, reason)

        try:
            self.lifecycle.mark_deletion_started(environment)
        except InvalidTransitionError:
            logger.info(
                f"Teardown of {environment.namespace} was cancelled",
                extra={"namespace": environment.namespace},
            )
            return False

        self.reconciler.teardown(environment)
        self.provisioner.destroy(environment.resources)
        self.lifecycle.mark_destroyed(environment)
        self.registry.release(environment.owner)

        logger.info(
            f"Environment destroyed: {environment.namespace}",
            extra={"namespace": environment.namespace, "reason": environment.drain_reason},
        )
        return True

    def cancel_teardown(self, service_name: str, feature_id: str) -> FeatureEnvironment:
        """
        Raises:
            EnvControllerError: If there is no such environment
            TeardownInProgressError: If deletion already started
        """
        environment = self.lifecycle.get(service_name, feature_id)
        if environment is None:
            raise EnvControllerError(f"No environment for {service_name}/{feature_id}")
        self.lifecycle.cancel_teardown(environment)
        return environment

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def teardown_feature(self, feature_id: str, reason: str) -> bool:
        """Tear down every live environment of a feature. Returns True if all succeeded."""
        environments = [
            env
            for env in self.lifecycle.find_by_feature(feature_id)
            if env.status != EnvironmentStatus.DESTROYED
        ]
        if not environments:
            logger.info(
                f"No environments for feature {feature_id}", extra={"feature_id": feature_id}
            )
            return True

        results = self._run_concurrently(
            environments,
            lambda env: self.teardown(env, reason),
            label=lambda env: env.namespace,
        )
        return not any(isinstance(result, Exception) for result in results)

    def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """
        Enforce TTLs and retry unfinished teardowns.

        Returns:
            Counts of destroyed, delayed and failed environments
        """
        to_destroy: list[FeatureEnvironment] = []
        delayed = 0

        for environment in self.lifecycle.list():
            if environment.status == EnvironmentStatus.DRAINING:
                to_destroy.append(environment)
                continue
            try:
                if self.lifecycle.check_ttl(environment, now):
                    to_destroy.append(environment)
            except TTLExpiredWithActiveLock as e:
                logger.warning(str(e), extra={"namespace": environment.namespace})
                delayed += 1
                try:
                    self.reconciler.record_ttl_extension(environment)
                except EnvControllerError as record_error:
                    logger.warning(
                        f"Could not record TTL extension of {environment.namespace}: {record_error}",
                        extra={
                            "namespace": environment.namespace,
                            "error_type": type(record_error).__name__,
                        },
                    )

        results = self._run_concurrently(
            to_destroy,
            lambda env: self.teardown(env, reason=env.drain_reason or "ttl-expired"),
            label=lambda env: env.namespace,
        )

        summary = {
            "destroyed": sum(1 for result in results if result is True),
            "delayed": delayed,
            "failed": sum(1 for result in results if isinstance(result, Exception)),
        }
        logger.info("Sweep finished", extra=summary)
        return summary

    def _run_concurrently(
        self,
        items: Iterable[Any],
        task: Callable[[Any], T],
        label: Callable[[Any], str],
    ) -> list[T | EnvControllerError]:
        """
        Run task for every item on the thread pool.

        Each task runs under its own operation id, prefixed with the caller's,
        so log lines of concurrent environments can be told apart. Controller
        errors are logged and returned in place of results; anything else
        propagates.
        """
        items = list(items)
        if not items:
            return []

        parent_id = get_operation_id()

        def run(item: Any) -> T | EnvControllerError:
            scope_id = f"{parent_id}/{label(item)}" if parent_id else None
            with operation_scope(scope_id):
                try:
                    return task(item)
                except EnvControllerError as e:
                    logger.error(
                        str(e), extra={"target": label(item), "error_type": type(e).__name__}
                    )
                    return e

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, run, item) for item in items
            ]
            return [future.result() for future in futures]

    def status(self) -> list[dict[str, Any]]:
        return [env.to_dict() for env in self.lifecycle.list()]
