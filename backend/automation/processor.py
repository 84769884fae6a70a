"""Automation processor: polls pending execution logs and runs their workflows.

One pass:
1. Fetch the oldest ``pending`` logs (bounded batch) and any ``waiting``
   logs whose ``resume_at`` has passed.
2. Skip duplicates among the pending ones.
3. For each survivor, sequentially: claim (compare-and-set to ``running``),
   validate the workflow, resolve variables, interpret the steps, then
   complete, park, requeue or fail the log.

Passes never overlap: a boolean in-flight flag guards them, and a pass is
never interrupted by :meth:`AutomationProcessor.stop`. A second timer runs
the stale pending sweep on its own interval.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from automation.dedup import Deduplicator
from automation.retry import FailureClassifier
from automation.steps import RunOutcome, StepContext
from core.constants import PENDING_EXPIRED_MESSAGE
from core.exceptions import TransientStepError, WorkflowValidationError
from core.logging_config import bind_execution_context, clear_execution_context
from core.utils import utcnow

logger = logging.getLogger(__name__)

RECENT_FAILURE_WINDOW = timedelta(hours=1)


@dataclass
class ProcessorConfig:
    """Tunables for :class:`AutomationProcessor`."""

    poll_interval_seconds: float = 30.0
    batch_size: int = 10
    pending_expiry_seconds: float = 3600.0
    processed_set_max: int = 10_000
    fetch_exclusion_window: int = 100
    sweep_interval_seconds: float = 600.0

    @classmethod
    def from_settings(cls, settings) -> "ProcessorConfig":
        return cls(
            poll_interval_seconds=settings.AUTOMATION_POLL_INTERVAL_SECONDS,
            batch_size=settings.AUTOMATION_BATCH_SIZE,
            pending_expiry_seconds=settings.AUTOMATION_PENDING_EXPIRY_SECONDS,
            processed_set_max=settings.AUTOMATION_PROCESSED_SET_MAX,
            fetch_exclusion_window=settings.AUTOMATION_FETCH_EXCLUSION_WINDOW,
            sweep_interval_seconds=settings.AUTOMATION_SWEEP_INTERVAL_SECONDS,
        )


class AutomationProcessor:
    """Timer-driven executor of automation execution logs.

    Constructed by the hosting process; nothing starts until :meth:`start`.
    """

    def __init__(
        self,
        log_store,
        workflow_cache,
        interpreter,
        resolver,
        metrics,
        classifier: Optional[FailureClassifier] = None,
        config: Optional[ProcessorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.log_store = log_store
        self.workflow_cache = workflow_cache
        self.interpreter = interpreter
        self.resolver = resolver
        self.metrics = metrics
        self.classifier = classifier or FailureClassifier()
        self.config = config or ProcessorConfig()
        self.deduplicator = Deduplicator(log_store)
        self._clock = clock

        self._running = False
        self._processing = False
        self._ticker: Optional[asyncio.Task] = None
        self._pass_task: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._last_sweep_at: Optional[datetime] = None
        self._processed: set[str] = set()
        # Insertion-ordered; only this tail is sent as the fetch exclusion
        self._recent: dict[str, None] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_processing(self) -> bool:
        return self._processing

    # ─── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Arm the poll timer and the sweep timer; the first pass runs immediately."""
        if self._running:
            return
        self._running = True
        self._ticker = asyncio.create_task(self._tick_loop())
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Automation processor started (interval={self.config.poll_interval_seconds}s, "
            f"batch={self.config.batch_size}, sweep={self.config.sweep_interval_seconds}s)"
        )

    async def stop(self, drain: bool = True) -> None:
        """Disarm both timers. An in-flight pass is left to finish."""
        if not self._running:
            return
        self._running = False

        for timer in (self._ticker, self._sweeper):
            if timer is None:
                continue
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        self._ticker = None
        self._sweeper = None

        if drain and self._pass_task is not None and not self._pass_task.done():
            await self._pass_task

        logger.info("Automation processor stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            self._launch_pass()
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.clear_old_pending_logs()
            except Exception as e:
                logger.error(f"Stale pending sweep failed: {e}", exc_info=True)

    def _launch_pass(self) -> Optional[asyncio.Task]:
        if self._processing:
            logger.debug("Previous automation pass still running, skipping tick")
            return None
        self._processing = True
        self._pass_task = asyncio.create_task(self._run_pass())
        return self._pass_task

    async def _run_pass(self) -> None:
        try:
            await self.process_pending_logs()
        except Exception as e:
            logger.error(f"Automation pass failed: {e}", exc_info=True)
        finally:
            self._processing = False

    async def process_now(self) -> bool:
        """Run an out-of-band pass. Returns False if one is already in flight."""
        task = self._launch_pass()
        if task is None:
            return False
        await task
        return True

    # ─── Passes ───────────────────────────────────────────────

    async def process_pending_logs(self) -> int:
        """Process one batch. Returns the number of logs attempted."""
        batch_size = self.config.batch_size
        pending = await self.log_store.fetch_pending(batch_size, exclude_ids=list(self._recent))
        due = await self.log_store.fetch_due_waiting(self._clock(), batch_size - len(pending))

        if not pending and not due:
            return 0

        survivors = await self.deduplicator.deduplicate(pending)
        logger.info(
            f"Processing {len(survivors)} pending and {len(due)} resumed automation logs"
        )

        for log in [*survivors, *due]:
            await self.process_log(log)

        return len(survivors) + len(due)

    def _remember(self, log_id: str) -> None:
        if len(self._processed) >= self.config.processed_set_max:
            logger.info(f"Clearing processed-log set ({len(self._processed)} entries)")
            self._processed.clear()
        self._processed.add(log_id)

        self._recent.pop(log_id, None)
        self._recent[log_id] = None
        overflow = len(self._recent) - self.config.fetch_exclusion_window
        for stale_id in list(self._recent)[:max(overflow, 0)]:
            del self._recent[stale_id]

    def _forget(self, log_id: str) -> None:
        self._processed.discard(log_id)
        self._recent.pop(log_id, None)

    async def process_log(self, log) -> None:
        """Claim and run a single execution log."""
        self._remember(log.id)

        claimed = await self.log_store.claim(log.id)
        if claimed is None:
            logger.info(f"Execution log {log.id} already claimed or finished, skipping")
            return

        bind_execution_context(execution_log_id=claimed.id, workflow_id=claimed.workflow_id)
        started = time.monotonic()
        details = copy.deepcopy(claimed.details or {})
        details.setdefault("retry_count", 0)

        try:
            validation = await self.workflow_cache.validate(claimed.workflow_id)
            if not validation.is_valid:
                raise WorkflowValidationError(validation.reason, validation.error)

            workflow = validation.workflow
            trigger_data = dict(claimed.trigger_data or {})
            variables = await self.resolver.resolve(
                claimed.trigger_type, trigger_data, workflow.user_id
            )

            step_results = details.setdefault("step_results", {})
            resume_step = int(details.get("resume_step") or 0)
            parked_delay = step_results.get(str(resume_step - 1)) if resume_step else None
            if parked_delay and parked_delay.get("status") == "parked":
                parked_delay["status"] = "completed"
            completed = frozenset(
                int(index) for index, result in step_results.items()
                if result.get("status") == "completed"
            )
            outcome = await self.interpreter.run(
                validation.steps,
                StepContext(
                    execution_log_id=claimed.id,
                    workflow=workflow,
                    trigger_data=trigger_data,
                    variables=variables,
                ),
                start_index=resume_step,
                completed=completed,
            )
            self._merge_outcome(details, outcome)

            # Checked before parking: a retry re-runs the failed step and
            # then reaches the (not completed) delay again.
            for failure in outcome.failures:
                if self.classifier.is_retryable(failure.error):
                    raise TransientStepError(failure.error, failure.index)

            if outcome.parked:
                details["resume_step"] = outcome.resume_step
                await self.log_store.park(claimed.id, outcome.resume_at, details)
                return

            details.pop("resume_step", None)
            details["execution_time_ms"] = self._elapsed_ms(started)
            if await self.log_store.complete(claimed.id, details):
                logger.info(
                    f"Execution log {claimed.id} completed "
                    f"({len(outcome.steps)} steps, {len(outcome.failures)} failed)"
                )
                await self.metrics.record(claimed.workflow_id, success=True)

        except WorkflowValidationError as e:
            details["execution_time_ms"] = self._elapsed_ms(started)
            logger.error(f"Execution log {claimed.id} failed validation: {e.message}")
            await self.log_store.fail(claimed.id, e.message, details)

        except Exception as e:
            await self._handle_failure(claimed, details, e, started)

        finally:
            clear_execution_context()

    async def _handle_failure(self, log, details: dict, error: Exception, started: float) -> None:
        decision = self.classifier.decide_for(log.retry_count, error)
        details["last_error"] = str(error)

        if decision.requeue:
            details["retry_count"] = decision.next_retry_count
            if await self.log_store.requeue(log.id, decision.error_message, details):
                self._forget(log.id)
                logger.warning(f"Execution log {log.id} requeued: {decision.error_message}")
            return

        details["final_retry_count"] = log.retry_count
        details["execution_time_ms"] = self._elapsed_ms(started)
        logger.error(f"Execution log {log.id} failed: {decision.error_message}")
        if await self.log_store.fail(log.id, decision.error_message, details):
            await self.metrics.record(log.workflow_id, success=False)

    @staticmethod
    def _merge_outcome(details: dict, outcome: RunOutcome) -> None:
        step_results = details.setdefault("step_results", {})
        for step in outcome.steps:
            step_results[str(step.index)] = step.to_dict()

        details["step_errors"] = [
            {"step": int(index), "error": result["error"]}
            for index, result in sorted(step_results.items(), key=lambda item: int(item[0]))
            if result.get("status") == "failed"
        ]

        if outcome.condition_results:
            recorded = {
                r["step"]: r for r in details.get("condition_results") or []
            }
            for record in outcome.condition_results:
                recorded[record["step"]] = record
            details["condition_results"] = [recorded[k] for k in sorted(recorded)]

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    # ─── Maintenance & health ─────────────────────────────────

    async def clear_old_pending_logs(self) -> int:
        """Expire pending logs older than the expiry threshold."""
        cutoff = self._clock() - timedelta(seconds=self.config.pending_expiry_seconds)
        expired = await self.log_store.expire_stale(cutoff, PENDING_EXPIRED_MESSAGE)
        self._last_sweep_at = self._clock()
        if expired:
            logger.info(f"Expired {expired} stale pending automation logs")
        return expired

    async def get_health_status(self) -> dict:
        return {
            "is_running": self._running,
            "is_processing": self._processing,
            "pending_count": await self.log_store.count_pending(),
            "recent_failures": await self.log_store.count_recent_failures(
                self._clock() - RECENT_FAILURE_WINDOW
            ),
            "cache_size": self.workflow_cache.size,
            "processed_in_session_size": len(self._processed),
            "last_sweep_at": self._last_sweep_at.isoformat() if self._last_sweep_at else None,
        }
