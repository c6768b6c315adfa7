"""
Namespace reconciler.

Renders a service's base manifests, merges the overlay on top and applies
the result into the feature environment's namespace. Invalid manifests are
fatal: ManifestError is raised to the caller and the apply is not retried.
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

from yaml import YAMLError, safe_load_all

from envcontroller.constants import (
    BASE_DIR,
    DEFAULT_TEMPLATE_DIR,
    FEATURE_ID_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    OVERLAYS_DIR,
    SERVICE_LABEL,
    TTL_EXTENDED_ANNOTATION,
)
from envcontroller.exceptions import ManifestError
from envcontroller.k8s_client import KubernetesClient
from envcontroller.logger import get_logger
from envcontroller.models import FeatureEnvironment
from envcontroller.template_renderer import render_directory

logger = get_logger(__name__)

# Kinds that cannot live inside a feature namespace
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "PersistentVolume",
    "StorageClass",
}


def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Merge overlay into a copy of base.

    Nested dicts are merged recursively; any other overlay value replaces the
    base value.
    """
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _identity(manifest: dict) -> tuple[str, str]:
    return (manifest["kind"], manifest["metadata"]["name"])


def parse_manifests(content: str, source: str) -> list[dict]:
    """
    Parse and validate the YAML documents in one rendered template.

    Empty documents are skipped.

    Raises:
        ManifestError: If YAML is malformed or a document is not a valid manifest
    """
    try:
        documents = [doc for doc in safe_load_all(content) if doc is not None]
    except YAMLError as e:
        raise ManifestError(f"Malformed YAML in {source}: {e}") from e

    for doc in documents:
        validate_manifest(doc, source)
    return documents


def validate_manifest(manifest: Any, source: str) -> None:
    """
    Raises:
        ManifestError: If the manifest lacks apiVersion, kind or metadata.name
    """
    if not isinstance(manifest, dict):
        raise ManifestError(f"Manifest in {source} must be a mapping, got {type(manifest).__name__}")

    for field in ("apiVersion", "kind"):
        if not isinstance(manifest.get(field), str) or not manifest[field]:
            raise ManifestError(f"Manifest in {source} missing required field: '{field}'")

    metadata = manifest.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ManifestError(f"{manifest['kind']} in {source} missing required field: 'metadata.name'")

    if manifest["kind"] in CLUSTER_SCOPED_KINDS:
        raise ManifestError(
            f"{manifest['kind']} {metadata['name']} in {source} is cluster-scoped "
            "and cannot be applied to a feature namespace"
        )


def merge_overlay(base: list[dict], overlay: list[dict]) -> list[dict]:
    """
    Merge overlay manifests onto base manifests.

    Documents are matched by (kind, metadata.name). Unmatched overlay
    documents are appended after the base documents.
    """
    merged = [copy.deepcopy(doc) for doc in base]
    index = {_identity(doc): i for i, doc in enumerate(merged)}

    for doc in overlay:
        position = index.get(_identity(doc))
        if position is None:
            index[_identity(doc)] = len(merged)
            merged.append(copy.deepcopy(doc))
        else:
            merged[position] = deep_merge(merged[position], doc)

    return merged


class NamespaceReconciler:
    """Applies base + overlay manifests for feature environments."""

    def __init__(self, k8s: KubernetesClient, template_dir: str = DEFAULT_TEMPLATE_DIR):
        self.k8s = k8s
        self.template_dir = template_dir

    def render(self, environment: FeatureEnvironment, service: dict[str, Any]) -> list[dict]:
        """
        Render the final manifest list for an environment.

        Args:
            environment: Target environment
            service: Service configuration (manifests, overlay)

        Returns:
            Merged manifests

        Raises:
            TemplateError: If rendering fails
            ManifestError: If a rendered manifest is invalid
        """
        root = Path(service.get("manifests") or self.template_dir)
        context = {
            "service": environment.service_name,
            "feature_id": environment.feature_id,
            "namespace": environment.namespace,
            "branch": environment.branch,
            "resources": environment.resources.to_dict(),
            "tags": dict(environment.resources.tags),
            "values": service.get("values") or {},
        }

        base: list[dict] = []
        for name, content in render_directory(str(root / BASE_DIR), context):
            base.extend(parse_manifests(content, f"{BASE_DIR}/{name}"))

        overlay: list[dict] = []
        overlay_name = service.get("overlay")
        if overlay_name:
            overlay_dir = root / OVERLAYS_DIR / overlay_name
            if overlay_dir.is_dir():
                for name, content in render_directory(str(overlay_dir), context):
                    overlay.extend(parse_manifests(content, f"{OVERLAYS_DIR}/{overlay_name}/{name}"))
            else:
                logger.debug(
                    f"No overlay directory for {overlay_name}",
                    extra={"overlay": overlay_name, "service": environment.service_name},
                )

        return merge_overlay(base, overlay)

    def reconcile(self, environment: FeatureEnvironment, service: dict[str, Any]) -> int:
        """
        Ensure the namespace exists and every manifest is applied.

        Returns:
            Number of manifests that changed (0 when everything was already applied)

        Raises:
            TemplateError, ManifestError: Fatal, not retried
            KubernetesError: If the Kubernetes API fails
        """
        manifests = self.render(environment, service)

        self.k8s.create_namespace(
            environment.namespace,
            labels={
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                FEATURE_ID_LABEL: environment.feature_id,
                SERVICE_LABEL: environment.service_name,
            },
        )

        changed = sum(
            1 for manifest in manifests if self.k8s.apply_manifest(manifest, environment.namespace)
        )

        logger.info(
            "Reconciled namespace",
            extra={
                "namespace": environment.namespace,
                "manifest_count": len(manifests),
                "changed": changed,
            },
        )
        return changed

    def teardown(self, environment: FeatureEnvironment) -> bool:
        """Delete the environment's namespace. Returns False if it was already gone."""
        return self.k8s.delete_namespace(environment.namespace)

    def namespace_metadata(self, namespace: str) -> dict | None:
        """Labels, annotations and creation time of a namespace, or None if it does not exist."""
        return self.k8s.read_namespace_metadata(namespace)

    def record_ttl_extension(self, environment: FeatureEnvironment) -> None:
        """Persist a granted TTL extension so later runs do not grant it again."""
        self.k8s.annotate_namespace(
            environment.namespace,
            {TTL_EXTENDED_ANNOTATION: environment.expires_at.isoformat()},
        )

    def managed_namespaces(self) -> list[dict]:
        """Metadata of every namespace created by the controller."""
        return self.k8s.list_namespace_metadata(f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}")
