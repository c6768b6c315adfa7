"""
Promotion tracker.

Appends one PromotionRecord per branch merge and answers read-only audit
queries. Records can be persisted as JSON Lines; the file is only ever
appended to.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from fnmatch import fnmatchcase
from pathlib import Path

from envcontroller.constants import DEFAULT_ENVIRONMENTS
from envcontroller.exceptions import ConfigError
from envcontroller.logger import get_logger
from envcontroller.models import PromotionRecord, utcnow

logger = get_logger(__name__)

# Environment name used for branches that match no pattern
UNMAPPED_ENV = "unmapped"


def resolve_environment(branch: str, environments: dict[str, str] | None = None) -> str | None:
    """
    Map a branch to its environment.

    Patterns are shell-style globs checked in order; the first match wins.

    >>> resolve_environment("feature/login-revamp")
    'ephemeral'
    >>> resolve_environment("release/uat")
    'uat'
    """
    if branch.startswith("refs/heads/"):
        branch = branch[len("refs/heads/") :]

    for pattern, environment in (environments or DEFAULT_ENVIRONMENTS).items():
        if fnmatchcase(branch, pattern):
            return environment
    return None


class PromotionTracker:
    """Append-only promotion log with query helpers."""

    def __init__(self, environments: dict[str, str] | None = None, path: str | None = None):
        self.environments = dict(environments or DEFAULT_ENVIRONMENTS)
        self.path = Path(path) if path else None
        self._records: list[PromotionRecord] = []
        self._lock = threading.Lock()

        if self.path and self.path.is_file():
            self._load()

    def _load(self) -> None:
        line_number = 0
        try:
            with open(self.path) as file:
                for line_number, line in enumerate(file, start=1):
                    if line.strip():
                        self._records.append(PromotionRecord.from_dict(json.loads(line)))
        except (OSError, ValueError, KeyError) as e:
            raise ConfigError(
                f"Could not read promotions file {self.path} (line {line_number}): {e}"
            ) from e

        logger.info(
            f"Loaded {len(self._records)} promotion records",
            extra={"promotions_file": str(self.path)},
        )

    def record_merge(
        self,
        branch: str,
        target_branch: str,
        approved_by: str | None = None,
        timestamp: datetime | None = None,
        delivery_id: str | None = None,
    ) -> PromotionRecord:
        """
        Append the record for merging branch into target_branch.

        A webhook delivered more than once carries the same delivery id; a
        merge whose delivery id is already in the log is not recorded again.

        Args:
            branch: Source branch, e.g. 'feature/login-revamp'
            target_branch: Branch merged into, e.g. 'release/uat'
            approved_by: Who approved/merged
            timestamp: Defaults to now (UTC)
            delivery_id: Webhook delivery id, if the merge came from one

        Returns:
            The appended record, or the earlier one for a repeated delivery
        """
        record = PromotionRecord(
            branch=branch,
            from_env=resolve_environment(branch, self.environments) or UNMAPPED_ENV,
            to_env=resolve_environment(target_branch, self.environments) or UNMAPPED_ENV,
            timestamp=timestamp or utcnow(),
            approved_by=approved_by,
            target_branch=target_branch,
            delivery_id=delivery_id,
        )

        with self._lock:
            if delivery_id:
                for existing in self._records:
                    if existing.delivery_id == delivery_id:
                        logger.info(
                            f"Delivery {delivery_id} already recorded, skipping",
                            extra={"branch": branch, "delivery_id": delivery_id},
                        )
                        return existing

            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as file:
                    file.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")
            self._records.append(record)

        logger.info(
            f"Recorded promotion {record.from_env} -> {record.to_env}",
            extra={
                "branch": branch,
                "target_branch": target_branch,
                "from_env": record.from_env,
                "to_env": record.to_env,
                "approved_by": approved_by,
                "delivery_id": delivery_id,
            },
        )
        return record

    def all(self) -> list[PromotionRecord]:
        with self._lock:
            return list(self._records)

    def list_by_branch(self, branch: str) -> list[PromotionRecord]:
        return [record for record in self.all() if record.branch == branch]

    def list_by_environment(self, environment: str) -> list[PromotionRecord]:
        """Records promoting into or out of an environment."""
        return [
            record
            for record in self.all()
            if environment in (record.from_env, record.to_env)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
