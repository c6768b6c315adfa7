"""
Source-control webhook handling.

Turns GitHub webhook deliveries into BranchEvents (created, merged, closed)
and verifies their HMAC signatures.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

from envcontroller.exceptions import WebhookError
from envcontroller.logger import get_logger
from envcontroller.models import BranchEvent, EventKind

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """
    Check the X-Hub-Signature-256 header of a delivery.

    Raises:
        WebhookError: If the signature is missing or does not match
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        raise WebhookError("Missing or malformed webhook signature")

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature[len(SIGNATURE_PREFIX) :]):
        raise WebhookError("Webhook signature mismatch")


def _strip_ref(ref: str) -> str:
    return ref[len("refs/heads/") :] if ref.startswith("refs/heads/") else ref


def _login(payload: dict[str, Any], *path: str) -> str | None:
    node: Any = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, str) else None


def parse_github_event(
    event_type: str, payload: dict[str, Any], delivery_id: str | None = None
) -> BranchEvent | None:
    """
    Convert a GitHub webhook payload into a BranchEvent.

    Args:
        event_type: Value of the X-GitHub-Event header
        payload: Decoded JSON body
        delivery_id: Value of the X-GitHub-Delivery header

    Returns:
        BranchEvent, or None for events the controller does not act on

    Raises:
        WebhookError: If a relevant payload is missing required fields
    """
    sender = _login(payload, "sender", "login")

    try:
        if event_type in ("create", "delete"):
            if payload.get("ref_type") != "branch":
                return None
            kind = EventKind.CREATED if event_type == "create" else EventKind.CLOSED
            return BranchEvent(
                kind=kind, branch=payload["ref"], sender=sender, delivery_id=delivery_id
            )

        if event_type == "push":
            ref = payload["ref"]
            if not ref.startswith("refs/heads/"):
                return None
            if payload.get("created"):
                kind = EventKind.CREATED
            elif payload.get("deleted"):
                kind = EventKind.CLOSED
            else:
                return None
            return BranchEvent(
                kind=kind, branch=_strip_ref(ref), sender=sender, delivery_id=delivery_id
            )

        if event_type == "pull_request":
            action = payload["action"]
            pull_request = payload["pull_request"]
            branch = pull_request["head"]["ref"]
            target = pull_request["base"]["ref"]

            if action == "closed":
                if pull_request.get("merged"):
                    kind = EventKind.MERGED
                    sender = _login(pull_request, "merged_by", "login") or sender
                else:
                    kind = EventKind.CLOSED
            elif action == "reopened":
                kind = EventKind.CREATED
            else:
                return None

            return BranchEvent(
                kind=kind,
                branch=branch,
                target_branch=target,
                pr_number=payload.get("number", pull_request.get("number")),
                sender=sender,
                delivery_id=delivery_id,
            )
    except (KeyError, TypeError) as e:
        raise WebhookError(f"Malformed {event_type} payload: missing {e}") from e

    logger.debug(f"Ignoring {event_type} event", extra={"delivery_id": delivery_id})
    return None
