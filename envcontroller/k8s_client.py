"""
Kubernetes client wrapper for namespace management and manifest apply.
"""

from __future__ import annotations

import copy
import hashlib
import json
import threading

from kubernetes import client, config, utils
from kubernetes.client.rest import ApiException
from kubernetes.utils import FailToCreateError

from envcontroller.constants import APPLIED_HASH_ANNOTATION
from envcontroller.exceptions import KubernetesError, ManifestError
from envcontroller.logger import get_logger
from envcontroller.naming import validate_k8s_name

logger = get_logger(__name__)

# API groups served by the built-in typed clients; anything else is a custom resource
BUILTIN_GROUPS = {"", "apps", "batch", "networking.k8s.io", "policy", "autoscaling"}

# kind -> (api attribute, patch method)
PATCH_METHODS = {
    "Deployment": ("apps_v1", "patch_namespaced_deployment"),
    "StatefulSet": ("apps_v1", "patch_namespaced_stateful_set"),
    "Service": ("v1", "patch_namespaced_service"),
    "ConfigMap": ("v1", "patch_namespaced_config_map"),
    "Secret": ("v1", "patch_namespaced_secret"),
    "ServiceAccount": ("v1", "patch_namespaced_service_account"),
    "Ingress": ("networking_v1", "patch_namespaced_ingress"),
}

# Status codes meaning the API server rejected the manifest itself
INVALID_MANIFEST_STATUSES = {400, 422}


def manifest_hash(manifest: dict) -> str:
    """Content hash of a manifest, ignoring the hash annotation itself."""
    stripped = copy.deepcopy(manifest)
    stripped.get("metadata", {}).get("annotations", {}).pop(APPLIED_HASH_ANNOTATION, None)
    encoded = json.dumps(stripped, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def _namespace_metadata(namespace) -> dict:
    return {
        "name": namespace.metadata.name,
        "labels": dict(namespace.metadata.labels or {}),
        "annotations": dict(namespace.metadata.annotations or {}),
        "created_at": namespace.metadata.creation_timestamp,
    }


class KubernetesClient:
    """
    Wrapper for Kubernetes API operations.

    apply_manifest remembers the content hash of everything it applied, so
    re-applying an unchanged manifest makes no API call.
    """

    def __init__(self, in_cluster: bool = False):
        """
        Initialize Kubernetes client.

        Args:
            in_cluster: Use the pod service account instead of ~/.kube/config
        """
        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                config.load_kube_config()
            self.v1 = client.CoreV1Api()
            self.apps_v1 = client.AppsV1Api()
            self.networking_v1 = client.NetworkingV1Api()
            self.custom_api = client.CustomObjectsApi()
            logger.info("Kubernetes client initialized successfully")
        except Exception as e:
            logger.critical(f"Failed to initialize Kubernetes client: {e}")
            raise

        self._applied: dict[tuple[str, str, str, str], str] = {}
        self._applied_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------

    def create_namespace(self, name: str, labels: dict[str, str] | None = None) -> bool:
        """
        Create a namespace.

        Args:
            name: Name of the namespace to create
            labels: Optional labels for the namespace

        Returns:
            True if created, False if it already existed

        Raises:
            ValidationError: If name validation fails
            KubernetesError: If creation fails (except for already exists)
        """
        validate_k8s_name(name, "namespace")

        try:
            namespace = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
            self.v1.create_namespace(namespace)
            logger.info(f"Created namespace: {name}", extra={"namespace": name})
            return True
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Namespace {name} already exists", extra={"namespace": name})
                return False
            raise KubernetesError(f"Failed to create namespace {name}: {e.reason}") from e

    def delete_namespace(self, name: str) -> bool:
        """
        Delete a namespace and everything in it.

        Returns:
            True if deleted, False if not found

        Raises:
            ValidationError: If name validation fails
            KubernetesError: If deletion fails (except for not found)
        """
        validate_k8s_name(name, "namespace")

        try:
            self.v1.delete_namespace(name)
            logger.info(f"Deleted namespace: {name}", extra={"namespace": name})
            deleted = True
        except ApiException as e:
            if e.status != 404:
                raise KubernetesError(f"Failed to delete namespace {name}: {e.reason}") from e
            logger.info(f"Namespace {name} not found (already deleted)", extra={"namespace": name})
            deleted = False

        with self._applied_lock:
            for key in [key for key in self._applied if key[0] == name]:
                del self._applied[key]

        return deleted

    def list_namespace_metadata(self, label_selector: str) -> list[dict]:
        """
        Metadata of every namespace matching a selector.

        Raises:
            KubernetesError: If listing fails
        """
        try:
            namespaces = self.v1.list_namespace(label_selector=label_selector)
        except ApiException as e:
            raise KubernetesError(f"Failed to list namespaces: {e.reason}") from e

        return [_namespace_metadata(ns) for ns in namespaces.items]

    def read_namespace_metadata(self, name: str) -> dict | None:
        """
        Name, labels, annotations and creation time of a namespace.

        Returns:
            Metadata dict, or None if the namespace does not exist

        Raises:
            KubernetesError: If the lookup fails
        """
        validate_k8s_name(name, "namespace")

        try:
            return _namespace_metadata(self.v1.read_namespace(name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError(f"Failed to read namespace {name}: {e.reason}") from e

    def annotate_namespace(self, name: str, annotations: dict[str, str]) -> None:
        """
        Raises:
            KubernetesError: If the patch fails
        """
        try:
            self.v1.patch_namespace(name, {"metadata": {"annotations": annotations}})
        except ApiException as e:
            raise KubernetesError(f"Failed to annotate namespace {name}: {e.reason}") from e

        logger.debug(
            f"Annotated namespace: {name}", extra={"namespace": name, "annotations": annotations}
        )

    def namespace_exists(self, name: str) -> bool:
        """
        Check if a namespace exists.

        Raises:
            ValidationError: If name validation fails
            KubernetesError: If check fails (except for not found)
        """
        validate_k8s_name(name, "namespace")

        try:
            self.v1.read_namespace(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to check namespace existence: {e.reason}") from e

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    def apply_manifest(self, manifest: dict, namespace: str) -> bool:
        """
        Create or update a namespaced resource.

        Args:
            manifest: Parsed manifest (apiVersion, kind and metadata.name present)
            namespace: Namespace to apply into; overrides metadata.namespace

        Returns:
            True if an API call was made, False if the manifest was unchanged

        Raises:
            ManifestError: If the API server rejects the manifest as invalid
            KubernetesError: If the operation fails otherwise
        """
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        metadata["namespace"] = namespace

        digest = manifest_hash(manifest)
        metadata.setdefault("annotations", {})[APPLIED_HASH_ANNOTATION] = digest

        kind = manifest.get("kind", "Resource")
        name = metadata.get("name", "unknown")
        key = (namespace, manifest.get("apiVersion", ""), kind, name)

        with self._applied_lock:
            if self._applied.get(key) == digest:
                logger.debug(
                    f"{kind} {name} unchanged, skipping",
                    extra={"kind": kind, "resource_name": name, "namespace": namespace},
                )
                return False

        if self._is_custom_resource(manifest):
            self._apply_custom_resource(manifest, namespace)
        else:
            self._apply_standard_resource(manifest, namespace)

        with self._applied_lock:
            self._applied[key] = digest
        return True

    def _is_custom_resource(self, manifest: dict) -> bool:
        api_version = manifest.get("apiVersion", "")
        group = api_version.split("/")[0] if "/" in api_version else ""
        return group not in BUILTIN_GROUPS

    def _apply_custom_resource(self, manifest: dict, namespace: str) -> None:
        """
        Apply a custom resource with create-or-update logic.

        Raises:
            KubernetesError: If operation fails
        """
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        group, version = manifest["apiVersion"].split("/")
        plural = kind.lower() + "s"

        try:
            self.custom_api.create_namespaced_custom_object(
                group=group, version=version, namespace=namespace, plural=plural, body=manifest
            )
            logger.info(
                f"Created {kind}: {name}",
                extra={"kind": kind, "resource_name": name, "namespace": namespace},
            )
            return
        except ApiException as e:
            if e.status in INVALID_MANIFEST_STATUSES:
                raise ManifestError(f"Invalid {kind} {name}: {e.reason}") from e
            if e.status != 409:
                raise KubernetesError(f"Failed to create {kind} {name}: {e.reason}") from e

        try:
            current = self.custom_api.get_namespaced_custom_object(
                group=group, version=version, namespace=namespace, plural=plural, name=name
            )
            manifest["metadata"]["resourceVersion"] = current["metadata"]["resourceVersion"]
            self.custom_api.patch_namespaced_custom_object(
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name,
                body=manifest,
            )
            logger.info(
                f"Updated {kind}: {name}",
                extra={"kind": kind, "resource_name": name, "namespace": namespace},
            )
        except ApiException as e:
            raise KubernetesError(f"Failed to update {kind} {name}: {e.reason}") from e

    def _apply_standard_resource(self, manifest: dict, namespace: str) -> None:
        """
        Apply a built-in resource with create-or-update logic.

        Raises:
            ManifestError: If the resource is rejected as invalid
            KubernetesError: If operation fails
        """
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]

        try:
            utils.create_from_dict(self.v1.api_client, manifest, namespace=namespace)
            logger.info(
                f"Created {kind}: {name}",
                extra={"kind": kind, "resource_name": name, "namespace": namespace},
            )
            return
        except FailToCreateError as e:
            statuses = {exc.status for exc in e.api_exceptions}
            reason = "; ".join(str(exc.reason) for exc in e.api_exceptions)
        except ApiException as e:
            statuses = {e.status}
            reason = str(e.reason)
        except (AttributeError, ValueError) as e:
            # create_from_dict cannot map unknown kinds or malformed bodies to an API
            raise ManifestError(f"Invalid {kind} {name}: {e}") from e

        if statuses & INVALID_MANIFEST_STATUSES:
            raise ManifestError(f"Invalid {kind} {name}: {reason}")

        if statuses != {409}:
            raise KubernetesError(f"Failed to apply {kind} {name}: {reason}")

        logger.info(
            f"{kind} {name} already exists, updating...",
            extra={"kind": kind, "resource_name": name, "namespace": namespace},
        )
        self._update_standard_resource(manifest, namespace, kind, name)

    def _update_standard_resource(
        self, manifest: dict, namespace: str, kind: str, name: str
    ) -> None:
        """
        Patch an existing built-in resource, routed by kind.

        Raises:
            KubernetesError: If update fails or kind is not supported
        """
        if kind not in PATCH_METHODS:
            raise KubernetesError(f"Update not implemented for resource kind: {kind}")

        api_attr, method = PATCH_METHODS[kind]
        patch = getattr(getattr(self, api_attr), method)

        try:
            patch(name=name, namespace=namespace, body=manifest)
            logger.info(
                f"Updated {kind}: {name}",
                extra={"kind": kind, "resource_name": name, "namespace": namespace},
            )
        except ApiException as e:
            if e.status in INVALID_MANIFEST_STATUSES:
                raise ManifestError(f"Invalid {kind} {name}: {e.reason}") from e
            raise KubernetesError(f"Failed to update {kind} {name}: {e.reason}") from e
