"""Workflow execution metrics."""

import logging
from datetime import datetime
from typing import Callable

from core.exceptions import MetricsUnavailableError
from core.utils import utcnow

logger = logging.getLogger(__name__)


class MetricsUpdater:
    """Records finished runs on the workflow's counters.

    Increments are done server-side (``SET col = col + 1``). A store
    without that capability is refused unless ``allow_non_atomic_fallback``
    is set, in which case counters are read, bumped and written back,
    which loses updates when several processors run at once.
    """

    def __init__(
        self,
        workflow_store,
        allow_non_atomic_fallback: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.workflow_store = workflow_store
        self._clock = clock
        self._atomic = bool(getattr(workflow_store, "supports_atomic_increment", False))

        if not self._atomic:
            if not allow_non_atomic_fallback:
                raise MetricsUnavailableError(
                    "Workflow store does not support atomic metric increments"
                )
            logger.warning(
                "Using non-atomic workflow metrics; counters may drift with multiple processors"
            )

    async def record(self, workflow_id: str, success: bool) -> None:
        """Count one finished run. Errors are logged, never raised."""
        if not workflow_id:
            return
        try:
            if self._atomic:
                await self.workflow_store.increment_metrics(workflow_id, success, self._clock())
            else:
                await self._record_non_atomic(workflow_id, success)
        except Exception as e:
            logger.error(f"Failed to update metrics for workflow {workflow_id}: {e}")

    async def _record_non_atomic(self, workflow_id: str, success: bool) -> None:
        workflow = await self.workflow_store.get(workflow_id)
        if workflow is None:
            logger.warning(f"Workflow {workflow_id} not found, metrics not recorded")
            return
        await self.workflow_store.write_metrics(
            workflow_id,
            execution_count=(workflow.execution_count or 0) + 1,
            success_count=(workflow.success_count or 0) + (1 if success else 0),
            at=self._clock(),
            success=success,
        )
