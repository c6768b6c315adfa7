"""
Operation context for log correlation.

Stores a unique operation ID for the current context so loggers can tag
every line belonging to one webhook delivery or one environment task.
Worker threads get their own context, so each concurrent reconciliation
sets its own ID through operation_scope().
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# Context variable to store the current operation ID
_operation_id: ContextVar[str | None] = ContextVar("operation_id", default=None)


def set_operation_id(operation_id: str | None = None) -> str:
    """
    Set the operation ID for the current context.

    Args:
        operation_id: Optional operation ID. If None, generates a new one.

    Returns:
        The operation ID that was set
    """
    if operation_id is None:
        operation_id = str(uuid.uuid4())[:8]

    _operation_id.set(operation_id)
    return operation_id


def get_operation_id() -> str | None:
    """
    Get the current operation ID from context.

    Returns:
        The operation ID, or None if not set
    """
    return _operation_id.get()


def clear_operation_id() -> None:
    """Clear the operation ID from context."""
    _operation_id.set(None)


@contextmanager
def operation_scope(operation_id: str | None = None) -> Iterator[str]:
    """
    Run a block under an operation ID, restoring the previous one afterwards.

    Args:
        operation_id: Optional operation ID. If None, generates a new one.

    Yields:
        The operation ID in effect inside the block
    """
    if operation_id is None:
        operation_id = str(uuid.uuid4())[:8]

    token = _operation_id.set(operation_id)
    try:
        yield operation_id
    finally:
        _operation_id.reset(token)
