"""
Constants for the ephemeral environment controller.

Centralized location for all magic strings, numbers, and configuration values.
"""

from pathlib import Path

# ============================================================================
# Naming
# ============================================================================

# Infix placed between service name and feature id (e.g. 'orders-feature456')
FEATURE_INFIX = "feature"

# Branch prefixes that identify feature branches
FEATURE_BRANCH_PREFIXES = ("feature/", "feature-")

# Resource type suffixes
RESOURCE_DB = "db"
RESOURCE_QUEUE = "queue"
RESOURCE_BUCKET = "bucket"
RESOURCE_TYPES = (RESOURCE_DB, RESOURCE_QUEUE, RESOURCE_BUCKET)

# Length of the digest suffix appended to shortened names
NAME_HASH_LENGTH = 8

# ============================================================================
# Kubernetes Validation Limits
# ============================================================================

# Maximum length for Kubernetes resource names (RFC 1123)
MAX_K8S_NAME_LENGTH = 63

# RFC 1123 label
K8S_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

# ============================================================================
# Kubernetes Labels and Annotations
# ============================================================================

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "envcontroller"
FEATURE_ID_LABEL = "envcontroller/feature-id"
SERVICE_LABEL = "envcontroller/service"

# Set to "true" by whoever is still using an environment; delays TTL teardown once
LOCKED_LABEL = "envcontroller/locked"

# Expiry time after the one-time TTL extension was granted
TTL_EXTENDED_ANNOTATION = "envcontroller/ttl-extended-until"

# Annotation holding the hash of the last applied manifest content
APPLIED_HASH_ANNOTATION = "envcontroller/applied-hash"

# ============================================================================
# Environments
# ============================================================================

# Environment name for feature branches
EPHEMERAL_ENV = "ephemeral"

# Default branch pattern -> environment mapping (first match wins)
DEFAULT_ENVIRONMENTS = {
    "feature/*": EPHEMERAL_ENV,
    "feature-*": EPHEMERAL_ENV,
    "develop": "dev",
    "release/qa": "qa",
    "release/uat": "uat",
    "release/stage": "stage",
    "main": "prod",
    "master": "prod",
}

# ============================================================================
# Lifecycle
# ============================================================================

# Default time-to-live for ephemeral environments
DEFAULT_TTL_HOURS = 72

# Extra time granted once when an environment is still locked at expiry
DEFAULT_TTL_GRACE_HOURS = 24

# ============================================================================
# Provisioner
# ============================================================================

PROVISIONER_BACKENDS = ("memory", "terraform")
DEFAULT_PROVISIONER_BACKEND = "memory"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_MIN = 1
DEFAULT_BACKOFF_MAX = 30
DEFAULT_TERRAFORM_DIR = "infra/feature-env"
DEFAULT_TERRAFORM_TIMEOUT = 600
TERRAFORM_BINARY = "terraform"
TF_WORKSPACE_ENV = "TF_WORKSPACE"

# Substrings in backend output that mark a retryable failure
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "quota",
    "rate limit",
    "throttl",
    "requesterror",
    "connection reset",
    "connection refused",
    "error acquiring the state lock",
)

# ============================================================================
# Concurrency
# ============================================================================

DEFAULT_MAX_WORKERS = 4

# ============================================================================
# Jinja2 Templates
# ============================================================================

# Manifest template suffix
TEMPLATE_SUFFIX = ".yaml.j2"

# Sub-directory holding base manifests
BASE_DIR = "base"

# Sub-directory holding overlay directories
OVERLAYS_DIR = "overlays"

# Default overlay for feature environments
DEFAULT_OVERLAY = EPHEMERAL_ENV

# ============================================================================
# GitHub Configuration
# ============================================================================

# Marker to identify environment comments
ENVIRONMENT_READY_MARKER = "🚀 **Feature Environment Ready!**"

# Header carrying the webhook HMAC signature
SIGNATURE_HEADER = "X-Hub-Signature-256"

# ============================================================================
# Default Paths and Variables
# ============================================================================

# Default path for controller configuration file
DEFAULT_CONFIG_PATH = ".envcontroller.yaml"

# Default directory for manifest templates
DEFAULT_TEMPLATE_DIR = str(Path(__file__).parent / "templates")

# Default log file path
DEFAULT_LOG_FILE = "logs/envcontroller.log"

# Default log level
DEFAULT_LOG_LEVEL = "INFO"

# Default log output format
DEFAULT_LOG_FORMAT = "text"

# ============================================================================
# Logger Configuration
# ============================================================================

# Reserved LogRecord attributes for extra fields
RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "asctime",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "taskName",
}

# Fields to exclude from extra_fields extraction
EXCLUDED_EXTRA_FIELDS = {"operation_id", "extra_fields"}

# Date format for JSON formatter
JSON_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# Console output format for structured formatter
STRUCT_CONSOLE_FMT = "[%(operation_id)s] | %(levelname)-8s | %(message)s"

# File output format for structured formatter
STRUCT_FILE_FMT = "%(asctime)s | [%(operation_id)s] | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

# Date format for structured formatter
STRUCT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Console output format for text formatter
TEXT_CONSOLE_FMT = "[%(operation_id)s] | %(levelname)-8s | %(message)s"

# File output format for text formatter
TEXT_FILE_FMT = "%(asctime)s | [%(operation_id)s] | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"

# Date format for text formatter
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Maximum size of a log file before rotation
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB

# Number of rotated log files to keep
LOG_BACKUP_COUNT = 5

# Third-party loggers kept at WARNING
QUIET_LOGGERS = ("kubernetes", "urllib3", "github")

# ============================================================================
# Environment Variable Names
# ============================================================================

# GitHub access token
GITHUB_TOKEN = "GITHUB_TOKEN"

# GitHub repository (format owner/repo)
GITHUB_REPO = "GITHUB_REPO"

# GitHub Actions run ID
GITHUB_RUN_ID = "GITHUB_RUN_ID"

# Shared secret for webhook signatures
GITHUB_WEBHOOK_SECRET = "GITHUB_WEBHOOK_SECRET"

# Logging level
LOG_LEVEL = "LOG_LEVEL"

# Log file path
LOG_FILE = "LOG_FILE"
