"""
Shared pytest fixtures for all test files.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest

from envcontroller.lifecycle import LifecycleManager
from envcontroller.naming import namespace_name, resolve_resource_set
from envcontroller.provisioner import InMemoryBackend, ResourceProvisioner

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Fixed clock for lifecycle tests
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fixtures_dir():
    """Path to the fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def template_dir():
    """Path to template renderer fixtures directory."""
    return str(FIXTURES_DIR / "template_renderer")


@pytest.fixture
def manifests_dir():
    """Path to the base + overlay manifest fixtures."""
    return str(FIXTURES_DIR / "manifests")


@pytest.fixture
def load_webhook():
    """Load a webhook payload fixture by name."""

    def load(name):
        return json.loads((FIXTURES_DIR / "webhooks" / f"{name}.json").read_text())

    return load


@pytest.fixture
def services():
    """Service configuration as returned by load_config."""
    return [
        {"name": "orders", "team": "payments", "manifests": None, "overlay": "ephemeral", "values": {}},
        {"name": "billing", "team": "finance", "manifests": None, "overlay": "ephemeral", "values": {}},
    ]


@pytest.fixture
def lifecycle():
    return LifecycleManager()


@pytest.fixture
def make_environment(lifecycle):
    """Register an environment for (service, feature id) at the fixed clock."""

    def make(service="orders", feature_id="456", team="payments", now=NOW):
        resources = resolve_resource_set(service, feature_id, team, "ephemeral")
        return lifecycle.register(
            service,
            feature_id,
            namespace_name(service, feature_id),
            resources,
            branch=f"feature/{feature_id}",
            now=now,
        )

    return make


@pytest.fixture
def memory_backend():
    return InMemoryBackend()


@pytest.fixture
def provisioner(memory_backend):
    """Provisioner over the in-memory backend that never actually sleeps."""
    return ResourceProvisioner(
        memory_backend, max_attempts=3, backoff_min=0, backoff_max=0, sleep=Mock()
    )
