"""
Resource provisioner for feature environment infrastructure.

Creates and destroys the database, queue and bucket of a feature
environment through an infrastructure-as-code backend. Transient backend
failures are retried with exponential backoff up to a bounded number of
attempts, then the last ProvisionError is raised.
"""

from __future__ import annotations

import json
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from envcontroller.constants import (
    DEFAULT_BACKOFF_MAX,
    DEFAULT_BACKOFF_MIN,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TERRAFORM_TIMEOUT,
    TERRAFORM_BINARY,
    TF_WORKSPACE_ENV,
    TRANSIENT_ERROR_MARKERS,
)
from envcontroller.exceptions import ProvisionError
from envcontroller.logger import get_logger
from envcontroller.models import ResourceSet

logger = get_logger(__name__)


class InfraBackend(ABC):
    """Infrastructure-as-code backend interface."""

    @abstractmethod
    def apply(self, resource_set: ResourceSet) -> None:
        """Create or update every resource of the set. Must be idempotent."""

    @abstractmethod
    def destroy(self, resource_set: ResourceSet) -> None:
        """Delete every resource of the set. Deleting absent resources is not an error."""

    @abstractmethod
    def list_resources(self, tags: dict[str, str]) -> list[str]:
        """Names of existing resources carrying all of the given tags."""


class InMemoryBackend(InfraBackend):
    """Dict-backed backend for dry runs and tests."""

    def __init__(self):
        self.resources: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def apply(self, resource_set: ResourceSet) -> None:
        with self._lock:
            for name in resource_set.names:
                self.resources[name] = dict(resource_set.tags)

    def destroy(self, resource_set: ResourceSet) -> None:
        with self._lock:
            for name in resource_set.names:
                self.resources.pop(name, None)

    def list_resources(self, tags: dict[str, str]) -> list[str]:
        with self._lock:
            return sorted(
                name
                for name, resource_tags in self.resources.items()
                if all(resource_tags.get(key) == value for key, value in tags.items())
            )


class TerraformBackend(InfraBackend):
    """
    Runs a Terraform module once per feature environment.

    Each feature gets its own workspace, so state never overlaps between
    environments. The workspace is passed to every command through
    TF_WORKSPACE rather than selected in the working directory, so runs for
    different environments proceed in parallel and rely on Terraform's own
    state locking. The module receives db_name, queue_name, bucket_name and
    tags as variables.
    """

    def __init__(
        self,
        working_dir: str,
        timeout: int = DEFAULT_TERRAFORM_TIMEOUT,
        binary: str = TERRAFORM_BINARY,
    ):
        self.working_dir = working_dir
        self.timeout = timeout
        self.binary = binary
        self._initialized = False
        # Only `terraform init` touches the shared working directory
        self._init_lock = threading.Lock()

    def _workspace(self, tags: dict[str, str]) -> str:
        return f"{tags.get('env', 'ephemeral')}-{tags.get('service', 'shared')}-{tags['featureId']}"

    def _run(
        self, args: list[str], workspace: str | None = None, check: bool = True
    ) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        logger.debug(
            f"Running: {' '.join(command)}", extra={"cwd": self.working_dir, "workspace": workspace}
        )

        env = {**os.environ, "TF_IN_AUTOMATION": "1"}
        env.pop(TF_WORKSPACE_ENV, None)
        if workspace:
            env[TF_WORKSPACE_ENV] = workspace

        try:
            result = subprocess.run(
                command,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisionError(f"terraform {args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise ProvisionError(f"terraform binary not found: {self.binary}", transient=False) from e

        if check and result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            transient = any(marker in output.lower() for marker in TRANSIENT_ERROR_MARKERS)
            subcommand = " ".join(args[:2]) if args[0] in ("workspace", "state") else args[0]
            raise ProvisionError(
                f"terraform {subcommand} failed (exit {result.returncode}): {output}",
                transient=transient,
            )
        return result

    def _init(self) -> None:
        with self._init_lock:
            if not self._initialized:
                self._run(["init", "-input=false", "-no-color"])
                self._initialized = True

    def _workspace_exists(self, workspace: str) -> bool:
        """
        Raises:
            ProvisionError: If the workspaces cannot be listed (backend unreachable, locked state)
        """
        result = self._run(["workspace", "list"])
        names = {line.strip().lstrip("*").strip() for line in result.stdout.splitlines()}
        return workspace in names

    def _vars(self, resource_set: ResourceSet) -> list[str]:
        return [
            "-var", f"db_name={resource_set.db_name}",
            "-var", f"queue_name={resource_set.queue_name}",
            "-var", f"bucket_name={resource_set.bucket_name}",
            "-var", f"tags={json.dumps(resource_set.tags, sort_keys=True)}",
        ]  # fmt: skip

    def apply(self, resource_set: ResourceSet) -> None:
        workspace = self._workspace(resource_set.tags)
        self._init()
        if not self._workspace_exists(workspace):
            self._run(["workspace", "new", workspace])
        self._run(
            ["apply", "-auto-approve", "-input=false", "-no-color", *self._vars(resource_set)],
            workspace=workspace,
        )

    def destroy(self, resource_set: ResourceSet) -> None:
        workspace = self._workspace(resource_set.tags)
        self._init()
        if not self._workspace_exists(workspace):
            logger.info(
                "No terraform workspace, nothing to destroy",
                extra={"feature_id": resource_set.tags.get("featureId"), "workspace": workspace},
            )
            return

        self._run(
            ["destroy", "-auto-approve", "-input=false", "-no-color", *self._vars(resource_set)],
            workspace=workspace,
        )
        if self._state(workspace):
            return

        # The workspace being deleted must not be the current one
        result = self._run(["workspace", "delete", workspace], workspace="default", check=False)
        if result.returncode != 0:
            logger.warning(
                f"Could not delete terraform workspace {workspace}",
                extra={"workspace": workspace, "error": (result.stderr or result.stdout).strip()},
            )

    def _state(self, workspace: str) -> list[str]:
        result = self._run(["state", "list", "-no-color"], workspace=workspace)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def list_resources(self, tags: dict[str, str]) -> list[str]:
        workspace = self._workspace(tags)
        self._init()
        if not self._workspace_exists(workspace):
            return []
        return self._state(workspace)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ProvisionError) and error.transient


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Provisioner call failed, retrying: {error}",
        extra={
            "attempt": retry_state.attempt_number,
            "sleep_seconds": round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0,
        },
    )


class ResourceProvisioner:
    """Retrying front end for an InfraBackend."""

    def __init__(
        self,
        backend: InfraBackend,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_min: float = DEFAULT_BACKOFF_MIN,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._sleep = sleep

    @classmethod
    def from_config(cls, settings: dict[str, Any]) -> ResourceProvisioner:
        """Build a provisioner from the 'provisioner' section of the config."""
        if settings["backend"] == "terraform":
            backend: InfraBackend = TerraformBackend(
                settings["terraform_dir"], timeout=settings["timeout_seconds"]
            )
        else:
            backend = InMemoryBackend()

        return cls(
            backend,
            max_attempts=settings["max_attempts"],
            backoff_min=settings["backoff_min"],
            backoff_max=settings["backoff_max"],
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def provision(self, resource_set: ResourceSet) -> None:
        """
        Create the resources of a set.

        Raises:
            ProvisionError: After the last attempt fails, or at once for non-transient failures
        """
        start_time = time.perf_counter()

        for attempt in self._retrying():
            with attempt:
                self.backend.apply(resource_set)

        logger.info(
            "Provisioned resources",
            extra={
                "feature_id": resource_set.tags.get("featureId"),
                "resources": list(resource_set.names),
                "duration_seconds": round(time.perf_counter() - start_time, 3),
            },
        )

    def destroy(self, resource_set: ResourceSet) -> None:
        """
        Delete the resources of a set and confirm none remain.

        Raises:
            ProvisionError: If deletion keeps failing or resources remain after the last attempt
        """
        start_time = time.perf_counter()

        for attempt in self._retrying():
            with attempt:
                self.backend.destroy(resource_set)
                leftovers = self.backend.list_resources(resource_set.tags)
                if leftovers:
                    raise ProvisionError(
                        f"Resources still present after destroy: {', '.join(leftovers)}"
                    )

        logger.info(
            "Destroyed resources",
            extra={
                "feature_id": resource_set.tags.get("featureId"),
                "resources": list(resource_set.names),
                "duration_seconds": round(time.perf_counter() - start_time, 3),
            },
        )

    def exists(self, resource_set: ResourceSet) -> bool:
        return bool(self.backend.list_resources(resource_set.tags))
