"""
Ephemeral Environment Controller

Per-feature-branch namespaces and cloud resources that are created on branch
creation, promoted through environments on merge and torn down on TTL expiry.
"""

__version__ = "0.1.0"

from envcontroller.config_parser import load_config
from envcontroller.controller import EnvironmentController
from envcontroller.exceptions import (
    ConfigError,
    EnvControllerError,
    GitHubError,
    KubernetesError,
    ManifestError,
    NameCollisionError,
    ProvisionError,
    TemplateError,
    TTLExpiredWithActiveLock,
    ValidationError,
)
from envcontroller.lifecycle import LifecycleManager
from envcontroller.models import EnvironmentStatus, FeatureEnvironment, PromotionRecord, ResourceSet
from envcontroller.naming import resolve_resource_set
from envcontroller.promotion import PromotionTracker
from envcontroller.provisioner import ResourceProvisioner
from envcontroller.reconciler import NamespaceReconciler
from envcontroller.registry import NameRegistry

__all__ = [
    "EnvironmentController",
    "LifecycleManager",
    "NameRegistry",
    "NamespaceReconciler",
    "PromotionTracker",
    "ResourceProvisioner",
    "EnvironmentStatus",
    "FeatureEnvironment",
    "PromotionRecord",
    "ResourceSet",
    "load_config",
    "resolve_resource_set",
    "EnvControllerError",
    "ConfigError",
    "ValidationError",
    "TemplateError",
    "ManifestError",
    "ProvisionError",
    "NameCollisionError",
    "TTLExpiredWithActiveLock",
    "GitHubError",
    "KubernetesError",
]
