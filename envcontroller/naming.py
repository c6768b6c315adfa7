"""
Naming resolver for feature environments.

Maps (service, feature id) to namespace and resource names following
`<service>-feature<id>-<resourceType>`. Every function here is pure: the
same input always yields the same name.
"""

from __future__ import annotations

import hashlib
import re

from envcontroller.constants import (
    FEATURE_BRANCH_PREFIXES,
    FEATURE_INFIX,
    K8S_NAME_PATTERN,
    MAX_K8S_NAME_LENGTH,
    NAME_HASH_LENGTH,
    RESOURCE_BUCKET,
    RESOURCE_DB,
    RESOURCE_QUEUE,
    RESOURCE_TYPES,
)
from envcontroller.exceptions import ValidationError
from envcontroller.models import ResourceSet

_INVALID_ID_CHARS = re.compile(r"[^a-z0-9]+")


def validate_k8s_name(name: str, resource_type: str = "resource") -> None:
    """
    Validate a Kubernetes resource name (RFC 1123 label).

    Args:
        name: Name to validate
        resource_type: Type of resource for error messages

    Raises:
        ValidationError: If name is invalid
    """
    if not name:
        raise ValidationError(f"{resource_type.capitalize()} name cannot be empty")

    if len(name) > MAX_K8S_NAME_LENGTH:
        raise ValidationError(
            f"{resource_type.capitalize()} name too long "
            f"(max {MAX_K8S_NAME_LENGTH} chars, got {len(name)})"
        )

    if not re.match(K8S_NAME_PATTERN, name):
        raise ValidationError(
            f"Invalid {resource_type} name '{name}'. Must be lowercase letters, numbers, "
            "and hyphens only. Must start and end with alphanumeric character."
        )


def normalize_feature_id(feature_id: str | int) -> str:
    """
    Normalise a feature id into a DNS-safe token.

    'Login_Revamp' -> 'login-revamp', 456 -> '456'

    Raises:
        ValidationError: If nothing usable is left
    """
    normalized = _INVALID_ID_CHARS.sub("-", str(feature_id).lower()).strip("-")
    if not normalized:
        raise ValidationError(f"Invalid feature id: {feature_id!r}")
    return normalized


def feature_id_from_branch(branch: str) -> str:
    """
    Extract the normalised feature id from a feature branch name.

    Args:
        branch: Branch name, e.g. 'feature/login-revamp' or 'refs/heads/feature/456'

    Returns:
        Feature id, e.g. 'login-revamp'

    Raises:
        ValidationError: If the branch is not a feature branch
    """
    if branch.startswith("refs/heads/"):
        branch = branch[len("refs/heads/") :]

    for prefix in FEATURE_BRANCH_PREFIXES:
        if branch.startswith(prefix):
            return normalize_feature_id(branch[len(prefix) :])

    raise ValidationError(f"Not a feature branch: {branch}")


def is_feature_branch(branch: str) -> bool:
    try:
        feature_id_from_branch(branch)
    except ValidationError:
        return False
    return True


def _fit(name: str) -> str:
    """Shorten names over the Kubernetes limit, keeping them distinct via a digest suffix."""
    if len(name) <= MAX_K8S_NAME_LENGTH:
        return name

    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:NAME_HASH_LENGTH]
    head = name[: MAX_K8S_NAME_LENGTH - NAME_HASH_LENGTH - 1].rstrip("-")
    return f"{head}-{digest}"


def _base_name(service_name: str, feature_id: str | int) -> str:
    validate_k8s_name(service_name, "service")
    return f"{service_name}-{FEATURE_INFIX}{normalize_feature_id(feature_id)}"


def namespace_name(service_name: str, feature_id: str | int) -> str:
    """
    Namespace for a feature environment.

    >>> namespace_name("orders", 456)
    'orders-feature456'
    """
    return _fit(_base_name(service_name, feature_id))


def resource_name(service_name: str, feature_id: str | int, resource_type: str) -> str:
    """
    Name of one cloud resource of a feature environment.

    >>> resource_name("orders", 456, "db")
    'orders-feature456-db'

    Raises:
        ValidationError: If resource_type is unknown or the inputs are invalid
    """
    if resource_type not in RESOURCE_TYPES:
        raise ValidationError(
            f"Unknown resource type '{resource_type}', expected one of {', '.join(RESOURCE_TYPES)}"
        )
    return _fit(f"{_base_name(service_name, feature_id)}-{resource_type}")


def resolve_resource_set(
    service_name: str, feature_id: str | int, team: str, env: str
) -> ResourceSet:
    """
    Build the full ResourceSet for a feature environment.

    Args:
        service_name: Service name (valid DNS-1123 label)
        feature_id: Feature id (normalised here)
        team: Owning team, used as a tag
        env: Environment name, used as a tag

    Returns:
        ResourceSet with deterministic names and tags {featureId, service, team, env}
    """
    feature = normalize_feature_id(feature_id)
    return ResourceSet(
        db_name=resource_name(service_name, feature, RESOURCE_DB),
        queue_name=resource_name(service_name, feature, RESOURCE_QUEUE),
        bucket_name=resource_name(service_name, feature, RESOURCE_BUCKET),
        tags={"featureId": feature, "service": service_name, "team": team, "env": env},
    )
