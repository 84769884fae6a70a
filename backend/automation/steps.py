"""Step interpreter: runs a workflow's normalized steps for one execution.

Stored step lists come in several historical shapes::

    {"type": "action", "config": {"actionType": "send_sms", "message": "Hi {{client_name}}"}}
    {"type": "sms", "config": {"message": "..."}}
    {"type": "delay", "config": {"delayValue": 2, "delayUnit": "hours"}}
    {"type": "filter", "config": {"field": "job_status", "operator": "equals", "value": "completed"}}
    {"type": "notification", "config": {"title": "...", "message": "..."}}

``normalize_steps`` folds them into a closed set of ``Step`` kinds, and
``StepInterpreter`` dispatches on that kind. Each step is isolated: a
failing step is recorded and the remaining steps still run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from automation.store import NewCommunication, NewTask, WorkflowDefinition
from automation.variables import render_template
from core.constants import (
    DELAY_UNIT_SECONDS,
    ActionType,
    ConditionOperator,
    DelayUnit,
    StepKind,
)
from core.exceptions import ChannelDeliveryError, RecipientMissingError, StepExecutionError
from core.utils import strip_html, to_float, utcnow

logger = logging.getLogger(__name__)


# ─── Normalization ────────────────────────────────────────────

_ACTION_ALIASES = {
    "send_sms": ActionType.SEND_SMS,
    "sms": ActionType.SEND_SMS,
    "send_email": ActionType.SEND_EMAIL,
    "email": ActionType.SEND_EMAIL,
    "create_task": ActionType.CREATE_TASK,
    "task": ActionType.CREATE_TASK,
    "update_job_status": ActionType.UPDATE_JOB_STATUS,
}

_NOTIFICATION_ALIASES = frozenset({"notification", "send_notification"})
_CONDITION_ALIASES = frozenset({"condition", "filter"})


@dataclass(frozen=True)
class Step:
    """One executable step after normalization."""

    index: int
    kind: StepKind
    config: dict
    action: Optional[ActionType] = None
    step_id: Optional[str] = None
    name: str = ""

    @property
    def label(self) -> str:
        if self.action is not None:
            return self.action.value
        return self.kind.value


def raw_steps_of(workflow: WorkflowDefinition) -> list:
    """First non-empty step list among the three storage locations."""
    for candidate in (
        workflow.steps,
        (workflow.template_config or {}).get("steps"),
        (workflow.workflow_config or {}).get("steps"),
    ):
        if isinstance(candidate, list) and candidate:
            return candidate
    return []


def _classify(raw: dict) -> tuple[Optional[StepKind], Optional[ActionType]]:
    config = raw.get("config") or {}
    step_type = str(raw.get("type") or "").strip().lower()

    if step_type == "action":
        action_name = (
            config.get("actionType")
            or config.get("action_type")
            or raw.get("actionType")
            or raw.get("action_type")
            or ""
        )
        step_type = str(action_name).strip().lower()

    if step_type in _ACTION_ALIASES:
        return StepKind.ACTION, _ACTION_ALIASES[step_type]
    if step_type in _NOTIFICATION_ALIASES:
        return StepKind.NOTIFICATION, None
    if step_type in _CONDITION_ALIASES:
        return StepKind.CONDITION, None
    if step_type == StepKind.DELAY.value:
        return StepKind.DELAY, None
    return None, None


def normalize_steps(raw_steps: list) -> list[Step]:
    """Convert stored step dicts to executable ``Step`` objects.

    ``trigger`` steps and anything unrecognized are dropped.
    """
    steps: list[Step] = []
    for position, raw in enumerate(raw_steps or []):
        if not isinstance(raw, dict):
            logger.warning(f"Dropping malformed step at position {position}")
            continue
        if str(raw.get("type") or "").lower() == "trigger":
            continue

        kind, action = _classify(raw)
        if kind is None:
            logger.warning(
                f"Dropping unsupported step type '{raw.get('type')}' at position {position}"
            )
            continue

        steps.append(Step(
            index=len(steps),
            kind=kind,
            action=action,
            config=dict(raw.get("config") or {}),
            step_id=raw.get("id"),
            name=raw.get("name") or "",
        ))
    return steps


# ─── Conditions & delays ──────────────────────────────────────

def _as_number(text: str) -> Optional[float]:
    if not text.strip():
        return 0.0
    return to_float(text)


def evaluate_condition(config: dict, variables: dict[str, str]) -> bool:
    """Evaluate ``{field, operator, value}`` against the variable context.

    A missing field reads as the empty string. Numeric operators read a
    blank side as 0 and return False when either side is not a number.
    Unknown operators pass.
    """
    field_name = config.get("field") or ""
    actual = str(variables.get(field_name, ""))
    expected = "" if config.get("value") is None else str(config.get("value"))
    operator = str(config.get("operator") or "").lower()

    try:
        op = ConditionOperator(operator)
    except ValueError:
        logger.warning(f"Unknown condition operator '{operator}', treating as true")
        return True

    if op is ConditionOperator.EQUALS:
        return actual == expected
    if op is ConditionOperator.NOT_EQUALS:
        return actual != expected
    if op is ConditionOperator.CONTAINS:
        return expected.lower() in actual.lower()
    if op is ConditionOperator.NOT_CONTAINS:
        return expected.lower() not in actual.lower()
    if op is ConditionOperator.IS_EMPTY:
        return actual.strip() == ""
    if op is ConditionOperator.NOT_EMPTY:
        return actual.strip() != ""

    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    if op is ConditionOperator.GREATER_THAN:
        return left > right
    return left < right


def delay_seconds(config: dict) -> float:
    """Duration of a delay step in seconds.

    Reads ``delayValue``/``delayUnit`` (unit defaults to seconds), then the
    legacy ``seconds`` and ``delay_minutes`` keys.
    """
    if config.get("delayValue") is not None:
        value = to_float(config.get("delayValue")) or 0.0
        try:
            unit = DelayUnit(str(config.get("delayUnit") or "seconds").lower())
        except ValueError:
            logger.warning(f"Unknown delay unit '{config.get('delayUnit')}', using seconds")
            unit = DelayUnit.SECONDS
        return max(value * DELAY_UNIT_SECONDS[unit], 0.0)
    if config.get("seconds") is not None:
        return max(to_float(config.get("seconds")) or 0.0, 0.0)
    if config.get("delay_minutes") is not None:
        return max((to_float(config.get("delay_minutes")) or 0.0) * 60, 0.0)
    return 0.0


# ─── Outcomes ─────────────────────────────────────────────────

@dataclass
class StepOutcome:
    """Result of one step."""

    index: int
    kind: str
    status: str  # completed | failed | skipped | parked
    output: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "status": self.status}
        if self.output:
            data["output"] = self.output
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RunOutcome:
    """Result of interpreting a workflow's steps once."""

    steps: list[StepOutcome] = field(default_factory=list)
    condition_results: list[dict] = field(default_factory=list)
    parked: bool = False
    resume_at: Optional[datetime] = None
    resume_step: Optional[int] = None

    @property
    def failures(self) -> list[StepOutcome]:
        return [s for s in self.steps if s.status == "failed"]


@dataclass
class StepContext:
    """Everything a step needs to know about the execution it belongs to."""

    execution_log_id: str
    workflow: WorkflowDefinition
    trigger_data: dict
    variables: dict[str, str]

    @property
    def user_id(self) -> Optional[str]:
        return self.workflow.user_id or self.trigger_data.get("user_id")

    @property
    def organization_id(self) -> Optional[str]:
        return self.workflow.organization_id or self.trigger_data.get("organization_id")

    def correlation(self) -> dict:
        return {
            "client_id": self.variables.get("client_id") or self.trigger_data.get("client_id"),
            "job_id": self.variables.get("job_id") or self.trigger_data.get("job_id"),
            "workflow_id": self.workflow.id,
            "execution_log_id": self.execution_log_id,
            "user_id": self.user_id,
        }


# ─── Interpreter ──────────────────────────────────────────────

class StepInterpreter:
    """Executes normalized steps through the channel senders and CRM store.

    Args:
        crm_store: Used for notification, task and communication inserts and
            job status updates
        sms_sender: ``SmsSender`` implementation
        email_sender: ``EmailSender`` implementation
        inline_delay_max_seconds: Longer delays park the run instead of sleeping
        sleep: Awaitable sleep, injectable for tests
        clock: Naive-UTC clock used for ``resume_at``
    """

    def __init__(
        self,
        crm_store,
        sms_sender,
        email_sender,
        inline_delay_max_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.crm_store = crm_store
        self.sms_sender = sms_sender
        self.email_sender = email_sender
        self.inline_delay_max_seconds = inline_delay_max_seconds
        self._sleep = sleep
        self._clock = clock

        self._handlers = {
            StepKind.ACTION: self._execute_action,
            StepKind.DELAY: self._execute_delay,
            StepKind.CONDITION: self._execute_condition,
            StepKind.NOTIFICATION: self._execute_notification,
        }
        self._actions = {
            ActionType.SEND_SMS: self._send_sms,
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.CREATE_TASK: self._create_task,
            ActionType.UPDATE_JOB_STATUS: self._update_job_status,
        }

    async def run(
        self,
        steps: list[Step],
        context: StepContext,
        start_index: int = 0,
        completed: frozenset[int] = frozenset(),
    ) -> RunOutcome:
        """Run ``steps`` from ``start_index``, skipping indices in ``completed``.

        Returns as soon as a long delay parks the run.
        """
        outcome = RunOutcome()

        for step in steps[start_index:]:
            if step.index in completed:
                logger.debug(f"Step {step.index} already completed, skipping")
                continue

            result = await self._execute_step(step, context, outcome)
            outcome.steps.append(result)

            if outcome.parked:
                # Not completed until the run resumes after it
                result.status = "parked"
                break

        return outcome

    async def _execute_step(
        self, step: Step, context: StepContext, outcome: RunOutcome
    ) -> StepOutcome:
        handler = self._handlers.get(step.kind)
        if handler is None:
            logger.warning(f"No handler for step kind '{step.kind}', skipping")
            return StepOutcome(index=step.index, kind=step.label, status="skipped")

        try:
            output = await handler(step, context, outcome)
        except Exception as e:
            logger.warning(
                f"Step {step.index} ({step.label}) failed for execution "
                f"{context.execution_log_id}: {e}"
            )
            return StepOutcome(index=step.index, kind=step.label, status="failed", error=str(e))

        return StepOutcome(index=step.index, kind=step.label, status="completed", output=output or {})

    # ─── Step kinds ───────────────────────────────────────────

    async def _execute_action(self, step: Step, context: StepContext, outcome: RunOutcome) -> dict:
        action = self._actions.get(step.action)
        if action is None:
            logger.warning(f"Unknown action '{step.action}' at step {step.index}, skipping")
            return {"skipped": True}
        return await action(step, context)

    async def _execute_delay(self, step: Step, context: StepContext, outcome: RunOutcome) -> dict:
        seconds = delay_seconds(step.config)
        if seconds <= self.inline_delay_max_seconds:
            await self._sleep(seconds)
            return {"waited_seconds": seconds}

        resume_at = self._clock() + timedelta(seconds=seconds)
        outcome.parked = True
        outcome.resume_at = resume_at
        outcome.resume_step = step.index + 1
        logger.info(
            f"Execution {context.execution_log_id} parked for {seconds:.0f}s "
            f"until {resume_at.isoformat()}"
        )
        return {"delay_seconds": seconds, "resume_at": resume_at.isoformat()}

    async def _execute_condition(self, step: Step, context: StepContext, outcome: RunOutcome) -> dict:
        passed = evaluate_condition(step.config, context.variables)
        record = {
            "step": step.index,
            "field": step.config.get("field"),
            "operator": step.config.get("operator"),
            "value": step.config.get("value"),
            "result": passed,
        }
        outcome.condition_results.append(record)
        return {"result": passed}

    async def _execute_notification(self, step: Step, context: StepContext, outcome: RunOutcome) -> dict:
        title = render_template(step.config.get("title"), context.variables) or "Automation Notification"
        message = render_template(step.config.get("message"), context.variables)
        notification_id = await self.crm_store.insert_notification(
            user_id=context.user_id,
            title=title,
            message=message,
            entity_type=context.trigger_data.get("entity_type"),
            entity_id=context.trigger_data.get("entity_id"),
        )
        return {"notification_id": notification_id}

    # ─── Actions ──────────────────────────────────────────────

    @staticmethod
    def _recipient(config: dict, variables: dict[str, str], field_name: str) -> str:
        target = str(config.get("to") or config.get("recipient") or "client").strip()
        if target.lower() in ("client", "technician"):
            return variables.get(f"{target.lower()}_{field_name}", "")
        return render_template(target, variables)

    async def _send_sms(self, step: Step, context: StepContext) -> dict:
        message = render_template(step.config.get("message"), context.variables)
        phone = self._recipient(step.config, context.variables, "phone")
        if not phone:
            raise RecipientMissingError("Client phone number not found")

        result = await self.sms_sender.send(phone, message, context.correlation())
        if not result.success:
            raise ChannelDeliveryError(result.error or "SMS delivery failed")
        await self._log_communication("sms", phone, message, context, result.message_id)
        return {"to": phone, "message_id": result.message_id}

    async def _send_email(self, step: Step, context: StepContext) -> dict:
        subject = render_template(step.config.get("subject"), context.variables)
        html = render_template(
            step.config.get("body") or step.config.get("message"), context.variables
        )
        to = self._recipient(step.config, context.variables, "email")
        if not to:
            raise RecipientMissingError("Client email not found")

        result = await self.email_sender.send(
            to, subject, html, strip_html(html), context.correlation()
        )
        if not result.success:
            raise ChannelDeliveryError(result.error or "Email delivery failed")
        await self._log_communication("email", to, f"{subject}\n\n{html}", context, result.message_id)
        return {"to": to, "message_id": result.message_id}

    async def _create_task(self, step: Step, context: StepContext) -> dict:
        config = step.config
        variables = context.variables
        title = render_template(config.get("title") or config.get("description"), variables)

        due_date = None
        due_in_days = to_float(config.get("dueInDays") or config.get("due_in_days"))
        if due_in_days is not None:
            due_date = self._clock() + timedelta(days=due_in_days)

        task_id = await self.crm_store.insert_task(NewTask(
            title=title or "Automation Task",
            description=render_template(config.get("description"), variables),
            organization_id=context.organization_id,
            user_id=context.user_id,
            job_id=variables.get("job_id") or None,
            client_id=variables.get("client_id") or None,
            assigned_to=config.get("assignedTo") or config.get("assigned_to"),
            priority=config.get("priority") or "medium",
            due_date=due_date,
            created_by_automation=context.workflow.id,
        ))
        return {"task_id": task_id}

    async def _update_job_status(self, step: Step, context: StepContext) -> dict:
        config = step.config
        new_status = render_template(
            config.get("new_status") or config.get("newStatus") or config.get("status"),
            context.variables,
        ).strip()
        if not new_status:
            raise StepExecutionError("No job status configured")

        job_id = context.variables.get("job_id") or context.trigger_data.get("job_id")
        if not job_id:
            raise StepExecutionError("Job not found for status update")

        if not await self.crm_store.update_job_status(job_id, new_status):
            raise StepExecutionError(f"Job {job_id} not found")
        return {"job_id": job_id, "status": new_status}

    async def _log_communication(
        self,
        channel: str,
        recipient: str,
        content: str,
        context: StepContext,
        message_id: Optional[str],
    ) -> None:
        """Record an outbound message. The send already happened, so errors are only logged."""
        try:
            await self.crm_store.insert_communication(NewCommunication(
                type=channel,
                to_address=recipient,
                content=content,
                user_id=context.user_id,
                organization_id=context.organization_id,
                client_id=context.variables.get("client_id") or None,
                job_id=context.variables.get("job_id") or None,
                external_id=message_id,
                details={"automation": context.correlation()},
            ))
        except Exception as e:
            logger.error(
                f"Failed to log {channel} communication for execution "
                f"{context.execution_log_id}: {e}"
            )
