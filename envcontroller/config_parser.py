"""
Configuration file parser for the ephemeral environment controller.

Loads and validates the YAML file that lists the services getting feature
environments, lifecycle settings, branch-to-environment mapping and
provisioner settings. Missing optional sections are filled with defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from yaml import YAMLError, safe_load

from envcontroller.constants import (
    DEFAULT_BACKOFF_MAX,
    DEFAULT_BACKOFF_MIN,
    DEFAULT_ENVIRONMENTS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_OVERLAY,
    DEFAULT_PROVISIONER_BACKEND,
    DEFAULT_TERRAFORM_DIR,
    DEFAULT_TERRAFORM_TIMEOUT,
    DEFAULT_TTL_GRACE_HOURS,
    DEFAULT_TTL_HOURS,
    PROVISIONER_BACKENDS,
)
from envcontroller.exceptions import ConfigError, ValidationError
from envcontroller.logger import get_logger
from envcontroller.naming import validate_k8s_name

logger = get_logger(__name__)

REQUIRED_SERVICE_FIELDS = ["name", "team"]


def load_config(config_path: str) -> dict[str, Any]:
    """
    Load and parse YAML configuration file.

    Args:
        config_path: Path to the .envcontroller.yaml file

    Returns:
        dict: Parsed configuration with defaults applied

    Raises:
        ConfigError: If file not found, invalid YAML, or invalid fields
    """
    path = Path(config_path)

    if not path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    logger.debug(f"Loading config from {config_path}")

    try:
        with open(config_path) as file:
            config = safe_load(file)
    except YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {config_path}: {e}") from e

    if not config:
        raise ConfigError(f"Config file is empty: {config_path}")

    if not isinstance(config, dict):
        raise ConfigError(f"Config must be a mapping, got {type(config).__name__}")

    if "services" not in config:
        raise ConfigError("Config missing required field: 'services'")

    if not isinstance(config["services"], list):
        raise ConfigError("Config 'services' must be a list")

    if len(config["services"]) == 0:
        raise ConfigError("Config 'services' list is empty")

    seen = set()
    for i, service in enumerate(config["services"]):
        _validate_service(service, i)
        if service["name"] in seen:
            raise ConfigError(f"Duplicate service name: '{service['name']}'")
        seen.add(service["name"])

    config["ttl_hours"] = _positive_number(config, "ttl_hours", DEFAULT_TTL_HOURS)
    config["ttl_grace_hours"] = _positive_number(
        config, "ttl_grace_hours", DEFAULT_TTL_GRACE_HOURS
    )
    config["max_workers"] = int(_positive_number(config, "max_workers", DEFAULT_MAX_WORKERS))
    config["environments"] = _environments(config.get("environments"))
    config["provisioner"] = _provisioner(config.get("provisioner"))
    config.setdefault("promotions_file", None)

    logger.info(
        "Successfully loaded config",
        extra={"config_path": config_path, "service_count": len(config["services"])},
    )

    return config


def _validate_service(service: dict, index: int) -> None:
    """
    Validate a single service configuration and fill optional fields.

    Raises:
        ConfigError: If service is missing required fields
    """
    if not isinstance(service, dict):
        raise ConfigError(
            f"Service at index {index} must be a dictionary, got {type(service).__name__}"
        )

    for field in REQUIRED_SERVICE_FIELDS:
        if field not in service:
            service_name = service.get("name", f"service at index {index}")
            raise ConfigError(f"Service '{service_name}' missing required field: '{field}'")

    if not isinstance(service["name"], str):
        raise ConfigError(f"Service 'name' must be a string, got {type(service['name']).__name__}")

    try:
        validate_k8s_name(service["name"], "service")
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    if not isinstance(service["team"], str):
        raise ConfigError(
            f"Service '{service['name']}' 'team' must be a string, got {type(service['team']).__name__}"
        )

    service.setdefault("manifests", None)
    service.setdefault("overlay", DEFAULT_OVERLAY)
    service.setdefault("values", {})

    if not isinstance(service["values"], dict):
        raise ConfigError(f"Service '{service['name']}' 'values' must be a mapping")


def _positive_number(config: dict, key: str, default: float) -> float:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"Config '{key}' must be a positive number, got {value!r}")
    return value


def _environments(environments: Any) -> dict[str, str]:
    if environments is None:
        return dict(DEFAULT_ENVIRONMENTS)

    if not isinstance(environments, dict):
        raise ConfigError("Config 'environments' must be a mapping of branch pattern to environment")

    for pattern, env in environments.items():
        if not isinstance(pattern, str) or not isinstance(env, str):
            raise ConfigError(f"Invalid environment mapping: {pattern!r} -> {env!r}")

    return dict(environments)


def _provisioner(provisioner: Any) -> dict[str, Any]:
    if provisioner is None:
        provisioner = {}

    if not isinstance(provisioner, dict):
        raise ConfigError("Config 'provisioner' must be a mapping")

    settings = {
        "backend": provisioner.get("backend", DEFAULT_PROVISIONER_BACKEND),
        "max_attempts": provisioner.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
        "backoff_min": provisioner.get("backoff_min", DEFAULT_BACKOFF_MIN),
        "backoff_max": provisioner.get("backoff_max", DEFAULT_BACKOFF_MAX),
        "terraform_dir": provisioner.get("terraform_dir", DEFAULT_TERRAFORM_DIR),
        "timeout_seconds": provisioner.get("timeout_seconds", DEFAULT_TERRAFORM_TIMEOUT),
    }

    if settings["backend"] not in PROVISIONER_BACKENDS:
        raise ConfigError(
            f"Unknown provisioner backend '{settings['backend']}', "
            f"expected one of {', '.join(PROVISIONER_BACKENDS)}"
        )

    if not isinstance(settings["max_attempts"], int) or settings["max_attempts"] < 1:
        raise ConfigError(
            f"Provisioner 'max_attempts' must be a positive integer, got {settings['max_attempts']!r}"
        )

    if settings["backoff_min"] > settings["backoff_max"]:
        raise ConfigError("Provisioner 'backoff_min' must not exceed 'backoff_max'")

    return settings
