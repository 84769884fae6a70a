"""Template variable resolution for automation messages.

Builds the flat ``{{ variable }}`` context from the trigger entity, its
client, the workflow owner's company profile and the current date in the
owner's timezone.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.constants import EntityType
from core.utils import format_money

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

_ENTITY_ID_KEYS = {
    EntityType.JOB: "job_id",
    EntityType.INVOICE: "invoice_id",
    EntityType.TASK: "task_id",
    EntityType.CLIENT: "client_id",
}


def render_template(template: Optional[str], variables: dict[str, str]) -> str:
    """Replace ``{{ key }}`` placeholders; unknown keys are left verbatim."""
    if not template:
        return ""

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            return variables[key]
        return match.group(0)

    return _TEMPLATE_RE.sub(_substitute, str(template))


def format_date(value: datetime) -> str:
    """``Mon, Oct 19, 2026``"""
    return f"{value:%a, %b} {value.day}, {value.year}"


def format_time(value: datetime) -> str:
    """``2:05 PM``"""
    return f"{value.hour % 12 or 12}:{value:%M %p}"


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _system_utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VariableResolver:
    """Resolve the variable context for one execution.

    Args:
        crm_store: Source of jobs, invoices, tasks, clients and profiles
        default_timezone: IANA zone used when the owner has none (or an invalid one)
        default_company_name: Used when the owner profile has no company name
        clock: Returns the current aware UTC time; injectable for tests
    """

    def __init__(
        self,
        crm_store,
        default_timezone: str = "America/New_York",
        default_company_name: str = "Our Company",
        clock: Callable[[], datetime] = _system_utcnow,
    ):
        self.crm_store = crm_store
        self.default_timezone = default_timezone
        self.default_company_name = default_company_name
        self._clock = clock

    def _zone(self, name: Optional[str]) -> ZoneInfo:
        for candidate in (name, self.default_timezone):
            if not candidate:
                continue
            try:
                return ZoneInfo(candidate)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown timezone %r, falling back", candidate)
        return ZoneInfo("UTC")

    @staticmethod
    def _entity_type(trigger_data: dict) -> Optional[EntityType]:
        raw = trigger_data.get("entity_type")
        if raw:
            try:
                return EntityType(str(raw).lower())
            except ValueError:
                return None
        for entity_type, key in _ENTITY_ID_KEYS.items():
            if trigger_data.get(key):
                return entity_type
        return None

    async def resolve(
        self,
        trigger_type: Optional[str],
        trigger_data: Optional[dict],
        owner_id: Optional[str] = None,
    ) -> dict[str, str]:
        """Build the variable context for a trigger event.

        Args:
            trigger_type: Business event name
            trigger_data: Event payload from the execution log
            owner_id: Workflow owner's profile id (falls back to ``trigger_data.user_id``)

        Returns:
            Flat mapping of variable name to display string
        """
        data = trigger_data or {}
        variables: dict[str, str] = {}

        entity_type = self._entity_type(data)
        entity_id = data.get("entity_id")
        if entity_type is not None and not entity_id:
            entity_id = data.get(_ENTITY_ID_KEYS[entity_type])

        profile = await self.crm_store.get_profile(owner_id or data.get("user_id"))
        zone = self._zone(profile.timezone if profile else None)

        client_id = data.get("client_id")
        if entity_type is EntityType.JOB:
            client_id = await self._add_job(variables, entity_id, zone) or client_id
        elif entity_type is EntityType.INVOICE:
            client_id = await self._add_invoice(variables, entity_id, zone) or client_id
        elif entity_type is EntityType.TASK:
            client_id = await self._add_task(variables, entity_id, zone) or client_id
        elif entity_type is EntityType.CLIENT:
            client_id = entity_id or client_id

        if client_id:
            await self._add_client(variables, client_id)

        self._add_company(variables, profile)
        self._add_dates(variables, zone)

        variables["trigger_type"] = _text(trigger_type)
        variables["new_status"] = _text(data.get("new_status"))
        variables["old_status"] = _text(data.get("old_status"))
        for key, value in data.items():
            if key not in variables and isinstance(value, (str, int, float, bool)):
                variables[key] = _text(value)

        return variables

    # ─── Entities ──────────────────────────────────────────────

    def _localize(self, value: Optional[datetime], zone: ZoneInfo) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(zone)

    async def _add_job(self, variables: dict, job_id: Optional[str], zone: ZoneInfo) -> Optional[str]:
        job = await self.crm_store.get_job(job_id)
        if not job:
            return None

        scheduled = self._localize(job.schedule_start, zone)
        scheduled_date = format_date(scheduled) if scheduled else ""
        scheduled_time = format_time(scheduled) if scheduled else ""

        variables.update({
            "job_id": job.id,
            "job_number": job.id[:8],
            "job_title": _text(job.title),
            "job_description": _text(job.description),
            "job_type": _text(job.job_type),
            "job_status": _text(job.status),
            "service_type": _text(job.service or job.job_type),
            "job_address": _text(job.address),
            "address": _text(job.address),
            "scheduled_date": scheduled_date,
            "scheduled_time": scheduled_time,
            "appointment_date": scheduled_date,
            "appointment_time": scheduled_time,
        })

        technician = await self.crm_store.get_profile(job.technician_id)
        variables["technician_name"] = _text(technician.name) if technician else ""
        variables["technician_phone"] = _text(technician.phone) if technician else ""
        variables["technician_email"] = _text(technician.email) if technician else ""
        return job.client_id

    async def _add_invoice(self, variables: dict, invoice_id: Optional[str], zone: ZoneInfo) -> Optional[str]:
        invoice = await self.crm_store.get_invoice(invoice_id)
        if not invoice:
            return None

        due = self._localize(invoice.due_date, zone)
        days_overdue = 0
        if due is not None:
            today = self._clock().astimezone(zone).date()
            days_overdue = max((today - due.date()).days, 0)

        variables.update({
            "invoice_id": invoice.id,
            "invoice_number": _text(invoice.invoice_number),
            "amount": format_money(invoice.balance_due if invoice.balance_due is not None else invoice.total),
            "total": format_money(invoice.total),
            "balance_due": format_money(invoice.balance_due),
            "due_date": format_date(due) if due else "",
            "invoice_status": _text(invoice.status),
            "days_overdue": str(days_overdue),
        })
        if invoice.job_id:
            variables["job_id"] = invoice.job_id
        return invoice.client_id

    async def _add_task(self, variables: dict, task_id: Optional[str], zone: ZoneInfo) -> Optional[str]:
        task = await self.crm_store.get_task(task_id)
        if not task:
            return None

        due = self._localize(task.due_date, zone)
        variables.update({
            "task_id": task.id,
            "task_title": _text(task.title),
            "task_description": _text(task.description),
            "task_priority": _text(task.priority),
            "task_due_date": format_date(due) if due else "",
        })
        if task.job_id:
            variables["job_id"] = task.job_id
        return task.client_id

    async def _add_client(self, variables: dict, client_id: str) -> None:
        client = await self.crm_store.get_client(client_id)
        if not client:
            return
        first_name = client.first_name or (client.name or "").split(" ")[0]
        variables.update({
            "client_id": client.id,
            "client_name": _text(client.name),
            "client_first_name": _text(first_name),
            "client_last_name": _text(client.last_name),
            "client_email": _text(client.email),
            "client_phone": _text(client.phone),
            "client_address": _text(client.address),
            "client_city": _text(client.city),
            "client_state": _text(client.state),
            "client_zip": _text(client.zip),
        })

    def _add_company(self, variables: dict, profile) -> None:
        variables.update({
            "company_name": _text(profile and profile.company_name) or self.default_company_name,
            "company_phone": _text(profile and profile.company_phone),
            "company_email": _text(profile and profile.company_email),
            "company_website": _text(profile and profile.company_website),
            "booking_link": _text(profile and profile.booking_link),
            "review_link": _text(profile and profile.review_link),
        })

    def _add_dates(self, variables: dict, zone: ZoneInfo) -> None:
        now = self._clock().astimezone(zone)
        variables.update({
            "current_date": format_date(now),
            "current_time": format_time(now),
            "tomorrow_date": format_date(now + timedelta(days=1)),
        })
