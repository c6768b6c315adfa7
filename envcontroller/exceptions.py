"""
Custom exceptions for the ephemeral environment controller.

All exceptions inherit from EnvControllerError so callers can catch every
controller error with a single except clause. Whether an error is retried
is decided by its type: only ProvisionError is treated as transient.
"""


class EnvControllerError(Exception):
    """
    Base exception for all controller errors.

    Example:
        try:
            controller.handle_event(event)
        except EnvControllerError as e:
            logger.error(f"Controller error: {e}")
    """

    pass


class ConfigError(EnvControllerError):
    """
    Configuration-related errors.

    Raised when there are issues with the controller configuration file:
    - File not found
    - Invalid YAML syntax
    - Missing required fields
    - Invalid field values
    """

    pass


class ValidationError(EnvControllerError):
    """
    Validation errors for user input.

    Raised for invalid service names, feature ids, branch names and
    Kubernetes resource names.
    """

    pass


class TemplateError(EnvControllerError):
    """
    Template rendering errors.

    Raised when a Jinja2 manifest template is missing, has a syntax error
    or references an undefined variable.
    """

    pass


class ManifestError(EnvControllerError):
    """
    Invalid or malformed Kubernetes manifest.

    Fatal: reported to the caller and never retried.
    """

    pass


class ProvisionError(EnvControllerError):
    """
    Transient infrastructure failure (backend timeout, quota, leftover resource).

    Retried with exponential backoff by the ResourceProvisioner. Backend
    failures that retrying cannot fix (bad credentials, invalid input) are
    raised with transient=False and surface immediately.
    """

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)


class NameCollisionError(EnvControllerError):
    """
    A resource name is already reserved by another environment.

    Fatal: requires operator intervention.
    """

    def __init__(self, name: str, owner: str, requested_by: str, kind: str | None = None):
        self.name = name
        self.kind = kind
        self.owner = owner
        self.requested_by = requested_by
        subject = f"{kind} name" if kind else "Resource name"
        super().__init__(
            f"{subject} '{name}' is already reserved by '{owner}' "
            f"(requested by '{requested_by}')"
        )


class TTLExpiredWithActiveLock(EnvControllerError):
    """
    Environment TTL expired while the environment is still in use.

    The lifecycle manager warns and delays teardown once.
    """

    pass


class InvalidTransitionError(EnvControllerError):
    """Lifecycle state change not allowed by the state machine."""

    pass


class EnvironmentExistsError(EnvControllerError):
    """A live environment already exists for the (service, feature id) pair."""

    pass


class TeardownInProgressError(EnvControllerError):
    """Teardown cannot be cancelled because resource deletion has started."""

    pass


class WebhookError(EnvControllerError):
    """
    Webhook payload errors.

    Raised for invalid signatures and payloads missing required fields.
    """

    pass


class GitHubError(EnvControllerError):
    """
    GitHub API interaction errors.

    Raised when GitHub API operations fail:
    - Authentication failures
    - API rate limits
    - Comment posting failures
    - Repository access failures
    """

    pass


class KubernetesError(EnvControllerError):
    """
    Base exception for Kubernetes API errors.

    Raised when Kubernetes API operations fail. More specific Kubernetes
    errors inherit from this class.
    """

    pass

