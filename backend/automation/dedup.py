"""Duplicate execution log detection.

Two logs are duplicates when they run the same workflow for the same
entity reaching the same status. Only the oldest of a group survives a
pass; the rest are skipped.
"""

import logging
from typing import Any, Optional, Sequence

from core.constants import DUPLICATE_SKIP_MESSAGE

logger = logging.getLogger(__name__)

_ENTITY_ID_KEYS = ("entity_id", "job_id", "invoice_id", "task_id", "client_id")
_STATUS_KEYS = ("new_status", "status", "to_status")


def _first(data: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


def dedup_key(workflow_id: Optional[str], trigger_data: Optional[dict]) -> str:
    """``workflow_id:entity_id:new_status`` with missing parts left empty."""
    data = trigger_data or {}
    return f"{workflow_id or ''}:{_first(data, _ENTITY_ID_KEYS)}:{_first(data, _STATUS_KEYS)}"


def log_dedup_key(log: Any) -> str:
    return dedup_key(log.workflow_id, log.trigger_data)


class Deduplicator:
    """Collapses a batch of pending logs to one per dedup key."""

    def __init__(self, log_store):
        self.log_store = log_store

    async def deduplicate(self, logs: Sequence[Any]) -> list:
        """Skip duplicates in ``logs`` and return the survivors, oldest first."""
        ordered = sorted(logs, key=lambda log: (log.created_at, log.id))
        survivors: list = []
        duplicates: list[str] = []
        seen: set[str] = set()

        for log in ordered:
            key = log_dedup_key(log)
            if key in seen:
                duplicates.append(log.id)
                continue
            seen.add(key)
            survivors.append(log)

        if duplicates:
            skipped = await self.log_store.mark_skipped(duplicates, DUPLICATE_SKIP_MESSAGE)
            logger.info(
                "Skipped %d duplicate automation logs (%d found in batch)",
                skipped, len(duplicates),
            )

        return survivors
