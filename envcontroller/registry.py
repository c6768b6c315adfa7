"""
Global reservation table for resource names.

Names are reserved per kind (namespace, database, queue, bucket), so a
namespace and a backend resource that happen to share a name do not
collide. Reservations are all-or-nothing: either every requested name is
reserved for the owner or none is.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from envcontroller.exceptions import NameCollisionError
from envcontroller.logger import get_logger

logger = get_logger(__name__)

# (kind, name)
NameKey = tuple[str, str]


class NameRegistry:
    """Thread-safe (kind, name) -> owner table."""

    def __init__(self):
        self._owners: dict[NameKey, str] = {}
        self._lock = threading.Lock()

    def reserve(self, owner: str, names: Iterable[NameKey]) -> None:
        """
        Reserve (kind, name) pairs for an owner.

        Names already held by the same owner are accepted unchanged.

        Raises:
            NameCollisionError: If any name is held by another owner (nothing is reserved)
        """
        names = list(names)
        with self._lock:
            for kind, name in names:
                current = self._owners.get((kind, name))
                if current is not None and current != owner:
                    raise NameCollisionError(name, current, owner, kind=kind)

            for key in names:
                self._owners[key] = owner

        logger.debug(
            "Reserved names", extra={"owner": owner, "names": [name for _, name in names]}
        )

    def release(self, owner: str) -> list[NameKey]:
        """Release every name held by owner. Returns the released (kind, name) pairs."""
        with self._lock:
            released = [key for key, held_by in self._owners.items() if held_by == owner]
            for key in released:
                del self._owners[key]

        if released:
            logger.debug(
                "Released names", extra={"owner": owner, "names": [name for _, name in released]}
            )
        return released

    def owner_of(self, kind: str, name: str) -> str | None:
        with self._lock:
            return self._owners.get((kind, name))

    def names_of(self, owner: str) -> list[NameKey]:
        with self._lock:
            return sorted(key for key, held_by in self._owners.items() if held_by == owner)

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)
