"""
Command line entry point for the ephemeral environment controller.

Creates, promotes and tears down feature environments, processes webhook
deliveries, enforces TTLs and answers promotion audit queries.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from envcontroller.config_parser import load_config
from envcontroller.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_FORMAT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_TEMPLATE_DIR,
    EPHEMERAL_ENV,
    GITHUB_REPO,
    GITHUB_RUN_ID,
    GITHUB_TOKEN,
    GITHUB_WEBHOOK_SECRET,
    LOG_FILE,
    LOG_LEVEL,
    SIGNATURE_HEADER,
)
from envcontroller.context import set_operation_id
from envcontroller.controller import EnvironmentController
from envcontroller.events import parse_github_event, verify_signature
from envcontroller.exceptions import EnvControllerError, WebhookError
from envcontroller.github_integration import GithubClient
from envcontroller.k8s_client import KubernetesClient
from envcontroller.logger import get_logger, setup_logging
from envcontroller.models import BranchEvent, EventKind
from envcontroller.naming import (
    feature_id_from_branch,
    namespace_name,
    normalize_feature_id,
    resolve_resource_set,
)
from envcontroller.promotion import PromotionTracker
from envcontroller.reconciler import NamespaceReconciler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envcontroller", description="Manage ephemeral feature environments"
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--templates",
        default=DEFAULT_TEMPLATE_DIR,
        help=f"Path to manifest templates directory (default: {DEFAULT_TEMPLATE_DIR})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv(LOG_LEVEL, DEFAULT_LOG_LEVEL),
        help=f"Set logging level (default: {DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "structured", "json"],
        default=DEFAULT_LOG_FORMAT,
        help=f"Log output format (default: {DEFAULT_LOG_FORMAT})",
    )
    parser.add_argument(
        "--skip-github",
        action="store_true",
        help="Skip GitHub integration (don't post PR comments)",
    )
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use the pod service account instead of ~/.kube/config",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create the environments of a feature branch")
    create.add_argument("branch", help="Feature branch, e.g. feature/456")
    create.add_argument("--service", help="Only create the environment of this service")

    delete = commands.add_parser("delete", help="Tear down the environments of a feature branch")
    delete.add_argument("branch", help="Feature branch, e.g. feature/456")

    promote = commands.add_parser("promote", help="Record a merge and tear down feature environments")
    promote.add_argument("branch", help="Merged branch, e.g. feature/login-revamp")
    promote.add_argument("target", help="Branch merged into, e.g. release/uat")
    promote.add_argument("--approved-by", help="Who approved the merge")

    event = commands.add_parser("event", help="Process a GitHub webhook delivery")
    event.add_argument("event_type", help="Value of the X-GitHub-Event header")
    event.add_argument("payload", help="Path to the JSON payload")
    event.add_argument("--delivery-id", help="Value of the X-GitHub-Delivery header")
    event.add_argument("--signature", help=f"Value of the {SIGNATURE_HEADER} header")

    commands.add_parser("sweep", help="Tear down environments whose TTL expired")
    commands.add_parser("status", help="Print tracked environments as JSON")

    promotions = commands.add_parser("promotions", help="Print promotion records as JSON")
    query = promotions.add_mutually_exclusive_group()
    query.add_argument("--branch", help="Only records for this branch")
    query.add_argument("--env", help="Only records into or out of this environment")

    names = commands.add_parser("names", help="Print the resource names of a feature environment")
    names.add_argument("service", help="Service name")
    names.add_argument("feature_id", help="Feature id or feature branch")
    names.add_argument("--team", default="unknown", help="Team tag")

    return parser


def main(argv: list[str] | None = None) -> None:
    """
    CLI entry point.

    Exits with code 1 when the requested operation fails.
    """
    load_dotenv()

    args = build_parser().parse_args(argv)

    log_file_env = os.getenv(LOG_FILE)
    if log_file_env == "":
        log_file = None
    elif log_file_env is None:
        log_file = DEFAULT_LOG_FILE
    else:
        log_file = log_file_env

    setup_logging(level=args.log_level, log_file=log_file, log_format=args.log_format)

    # Webhook delivery IDs, then GitHub Actions run IDs, tie log lines to their trigger
    if args.command == "event" and args.delivery_id:
        set_operation_id(args.delivery_id)
    else:
        set_operation_id(os.getenv(GITHUB_RUN_ID))

    logger = get_logger(__name__)

    if args.command == "names":
        try:
            print_json(names_command(args.service, args.feature_id, args.team))
        except EnvControllerError as e:
            logger.error(str(e), extra={"error_type": type(e).__name__})
            sys.exit(1)
        return

    try:
        config = load_config(args.config)
    except EnvControllerError as e:
        logger.error(str(e), extra={"error_type": type(e).__name__})
        sys.exit(1)

    if args.command == "promotions":
        try:
            print_json(promotions_command(config, args.branch, args.env))
        except EnvControllerError as e:
            logger.error(str(e), extra={"error_type": type(e).__name__})
            sys.exit(1)
        return

    logger.info(f"Starting {args.command} operation", extra={"command": args.command})

    try:
        k8s = KubernetesClient(in_cluster=args.in_cluster)
    except Exception:
        logger.critical("Kubernetes client initialization failed", extra={"command": args.command})
        sys.exit(1)

    try:
        controller = EnvironmentController.from_config(
            config,
            NamespaceReconciler(k8s, template_dir=args.templates),
            github=build_github_client(args.skip_github),
        )
    except EnvControllerError as e:
        logger.error(str(e), extra={"error_type": type(e).__name__})
        sys.exit(1)

    operation_start = time.perf_counter()
    success = run_command(controller, args)
    duration = time.perf_counter() - operation_start

    if not success:
        logger.error(
            f"Operation {args.command} failed",
            extra={"command": args.command, "duration_seconds": round(duration, 3)},
        )
        sys.exit(1)

    logger.info(
        f"Operation {args.command} completed successfully",
        extra={"command": args.command, "duration_seconds": round(duration, 3)},
    )


def build_github_client(skip_github: bool) -> GithubClient | None:
    """GitHub client from the environment, or None when integration is disabled."""
    logger = get_logger(__name__)

    github_token = os.getenv(GITHUB_TOKEN)
    github_repo = os.getenv(GITHUB_REPO)

    if skip_github:
        logger.info(
            "GitHub integration disabled, skipped via --skip-github flag",
            extra={"skip_github": True},
        )
        return None

    if not (github_token and github_repo):
        logger.info(
            f"GitHub integration disabled, missing {GITHUB_TOKEN} or {GITHUB_REPO}",
            extra={"has_token": bool(github_token), "has_repo": bool(github_repo)},
        )
        return None

    try:
        return GithubClient(token=github_token, repo_name=github_repo)
    except Exception as e:
        logger.warning(f"GitHub integration disabled: {e}", extra={"error": str(e)})
        return None


def run_command(controller: EnvironmentController, args: argparse.Namespace) -> bool:
    """
    Dispatch a controller command.

    Returns:
        True if successful, False otherwise
    """
    logger = get_logger(__name__)

    try:
        if args.command == "create":
            if args.service:
                controller.create_environment(
                    args.service, feature_id_from_branch(args.branch), args.branch
                )
                return True
            return controller.handle_event(BranchEvent(kind=EventKind.CREATED, branch=args.branch))

        if args.command == "delete":
            return controller.handle_event(BranchEvent(kind=EventKind.CLOSED, branch=args.branch))

        if args.command == "promote":
            return controller.handle_event(
                BranchEvent(
                    kind=EventKind.MERGED,
                    branch=args.branch,
                    target_branch=args.target,
                    sender=args.approved_by,
                )
            )

        if args.command == "event":
            return event_command(controller, args)

        controller.recover_state()

        if args.command == "sweep":
            summary = controller.sweep()
            return summary["failed"] == 0

        if args.command == "status":
            print_json(controller.status())
            return True

    except EnvControllerError as e:
        logger.error(str(e), extra={"command": args.command, "error_type": type(e).__name__})
        return False

    raise ValueError(f"Unknown command: {args.command}")


def event_command(controller: EnvironmentController, args: argparse.Namespace) -> bool:
    """
    Process one webhook delivery read from a file.

    Raises:
        WebhookError: If the signature or payload is invalid
    """
    logger = get_logger(__name__)

    try:
        body = Path(args.payload).read_bytes()
    except OSError as e:
        raise WebhookError(f"Could not read payload {args.payload}: {e}") from e

    secret = os.getenv(GITHUB_WEBHOOK_SECRET)
    if secret:
        verify_signature(secret, body, args.signature)

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise WebhookError(f"Payload is not valid JSON: {e}") from e

    event = parse_github_event(args.event_type, payload, delivery_id=args.delivery_id)
    if event is None:
        logger.info(
            f"Nothing to do for {args.event_type} event", extra={"event_type": args.event_type}
        )
        return True

    return controller.handle_event(event)


def promotions_command(config: dict, branch: str | None, environment: str | None) -> list[dict]:
    tracker = PromotionTracker(config["environments"], config.get("promotions_file"))
    if branch:
        records = tracker.list_by_branch(branch)
    elif environment:
        records = tracker.list_by_environment(environment)
    else:
        records = tracker.all()
    return [record.to_dict() for record in records]


def names_command(service: str, feature: str, team: str) -> dict:
    """
    Raises:
        ValidationError: If the service name or feature id is invalid
    """
    if feature.startswith(("feature/", "feature-", "refs/heads/")):
        feature_id = feature_id_from_branch(feature)
    else:
        feature_id = normalize_feature_id(feature)

    resources = resolve_resource_set(service, feature_id, team, EPHEMERAL_ENV)
    return {"namespace": namespace_name(service, feature_id), **resources.to_dict()}


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


if __name__ == "__main__":
    main()
