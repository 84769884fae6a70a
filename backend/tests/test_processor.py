"""Integration tests for the automation processor against an in-memory database."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from core.constants import DUPLICATE_SKIP_MESSAGE, PENDING_EXPIRED_MESSAGE
from core.utils import utcnow
from db.models import AutomationWorkflow, CommunicationLog, Job, Notification, Task

SMS_STEP = {"type": "action", "config": {"actionType": "send_sms", "message": "Hi {{client_first_name}}, thanks from {{company_name}}"}}


async def _reload(log_store, log):
    return await log_store.get(log.id)


@pytest.mark.integration
class TestScenarios:
    async def test_delay_then_sms_completes(self, processor, make_workflow, make_log, log_store, sms_sender, fake_sleep):
        workflow = await make_workflow(steps=[
            {"type": "delay", "config": {"delayValue": 0, "delayUnit": "seconds"}},
            SMS_STEP,
        ])
        log = await make_log(workflow)

        assert await processor.process_now() is True

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert stored.started_at is not None
        assert "execution_time_ms" in stored.details
        assert fake_sleep.calls == [0]
        assert len(sms_sender.calls) == 1
        assert sms_sender.calls[0]["phone"] == "+15551234567"
        assert sms_sender.calls[0]["message"] == "Hi Jane, thanks from Acme HVAC"

    async def test_duplicates_collapse_to_oldest(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP])
        t0 = utcnow() - timedelta(minutes=5)
        older = await make_log(workflow, created_at=t0)
        newer = await make_log(workflow, created_at=t0 + timedelta(seconds=1))

        await processor.process_now()

        older_row = await _reload(log_store, older)
        newer_row = await _reload(log_store, newer)
        assert older_row.status == "completed"
        assert newer_row.status == "skipped"
        assert newer_row.error_message == DUPLICATE_SKIP_MESSAGE
        assert len(sms_sender.calls) == 1

    async def test_rate_limited_sms_is_requeued(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow)
        sms_sender.error = "rate limit exceeded"

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "pending"
        assert stored.details["retry_count"] == 1
        assert "Retry 1/3" in stored.error_message
        assert stored.details["last_error"] == "rate limit exceeded"
        assert log.id not in processor._processed
        assert log.id not in processor._recent

    async def test_false_condition_does_not_stop_later_steps(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[
            {"type": "condition", "config": {"field": "job_status", "operator": "equals", "value": "cancelled"}},
            SMS_STEP,
        ])
        log = await make_log(workflow)

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert stored.details["condition_results"][0]["result"] is False
        assert len(sms_sender.calls) == 1


@pytest.mark.integration
class TestRetries:
    async def test_fourth_failure_is_terminal(self, processor, make_workflow, make_log, log_store, sms_sender, session_factory):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow)
        sms_sender.error = "Service Unavailable"

        seen = []
        for _ in range(4):
            await processor.process_now()
            stored = await _reload(log_store, log)
            seen.append(stored.details["retry_count"])

        assert seen == [1, 2, 3, 3]
        assert stored.status == "failed"
        assert stored.details["final_retry_count"] == 3
        assert "execution_time_ms" in stored.details
        assert stored.completed_at is not None
        assert len(sms_sender.calls) == 4

        async with session_factory() as session:
            row = await session.get(AutomationWorkflow, workflow.id)
        assert row.execution_count == 1
        assert row.success_count == 0

    async def test_permanent_step_error_still_completes(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow)
        sms_sender.error = "Invalid destination number"

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert stored.details["step_errors"] == [{"step": 0, "error": "Invalid destination number"}]
        assert stored.details["retry_count"] == 0

    async def test_retry_does_not_resend_completed_steps(self, processor, make_workflow, make_log, log_store, sms_sender, email_sender):
        workflow = await make_workflow(steps=[
            {"type": "email", "config": {"subject": "Thanks", "body": "<p>Hi {{client_name}}</p>"}},
            SMS_STEP,
        ])
        log = await make_log(workflow)
        sms_sender.error = "network error"

        await processor.process_now()
        assert (await _reload(log_store, log)).status == "pending"

        sms_sender.error = None
        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert len(email_sender.calls) == 1
        assert len(sms_sender.calls) == 2
        assert stored.details["step_errors"] == []


@pytest.mark.integration
class TestValidation:
    async def test_inactive_workflow_fails_without_retry(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP], is_active=False)
        log = await make_log(workflow)

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "failed"
        assert "not active" in stored.error_message
        assert stored.details["retry_count"] == 0
        assert sms_sender.calls == []

    async def test_missing_workflow_fails(self, processor, make_log, log_store):
        log = await make_log(None)

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "failed"
        assert stored.error_message == "Workflow not found"

    async def test_trigger_only_workflow_has_no_executable_actions(self, processor, make_workflow, make_log, log_store):
        workflow = await make_workflow(steps=[{"type": "trigger", "config": {}}])
        log = await make_log(workflow)

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "failed"
        assert stored.error_message == "Workflow has no executable actions"


@pytest.mark.integration
class TestDurableDelay:
    async def test_long_delay_parks_and_resumes(self, processor, make_workflow, make_log, log_store, sms_sender, fake_sleep, clock):
        workflow = await make_workflow(steps=[
            {"type": "delay", "config": {"delayValue": 2, "delayUnit": "hours"}},
            SMS_STEP,
        ])
        log = await make_log(workflow)

        await processor.process_now()
        parked = await _reload(log_store, log)
        assert parked.status == "waiting"
        assert parked.resume_at == clock.now + timedelta(hours=2)
        assert parked.details["resume_step"] == 1
        assert sms_sender.calls == []
        assert fake_sleep.calls == []

        await processor.process_now()
        assert (await _reload(log_store, log)).status == "waiting"

        clock.advance(hours=2, seconds=1)
        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert "resume_step" not in stored.details
        assert len(sms_sender.calls) == 1

    async def test_retryable_failure_before_long_delay_is_retried(self, processor, make_workflow, make_log, log_store, sms_sender, session_factory, clock):
        workflow = await make_workflow(steps=[
            SMS_STEP,
            {"type": "delay", "config": {"delayValue": 2, "delayUnit": "hours"}},
            {"type": "notification", "config": {"message": "Follow up with {{client_name}}"}},
        ])
        log = await make_log(workflow)
        sms_sender.error = "rate limit exceeded"

        await processor.process_now()

        requeued = await _reload(log_store, log)
        assert requeued.status == "pending"
        assert requeued.details["retry_count"] == 1
        assert "Retry 1/3" in requeued.error_message
        assert requeued.details["step_results"]["1"]["status"] == "parked"
        assert "resume_step" not in requeued.details

        sms_sender.error = None
        await processor.process_now()

        parked = await _reload(log_store, log)
        assert parked.status == "waiting"
        assert parked.resume_at == clock.now + timedelta(hours=2)
        assert parked.details["resume_step"] == 2
        assert len(sms_sender.calls) == 2

        clock.advance(hours=2, seconds=1)
        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert stored.details["retry_count"] == 1
        assert stored.details["step_errors"] == []
        assert stored.details["step_results"]["1"]["status"] == "completed"
        assert len(sms_sender.calls) == 2
        async with session_factory() as session:
            notifications = (await session.execute(select(Notification))).scalars().all()
        assert len(notifications) == 1


@pytest.mark.integration
class TestSideEffects:
    async def test_notification_and_task_rows_are_written(self, processor, make_workflow, make_log, log_store, session_factory, owner, job):
        workflow = await make_workflow(steps=[
            {"type": "notification", "config": {"message": "{{client_name}}'s job is done"}},
            {"type": "action", "config": {"actionType": "create_task", "title": "Call {{client_first_name}}", "priority": "high"}},
        ])
        log = await make_log(workflow)

        await processor.process_now()
        assert (await _reload(log_store, log)).status == "completed"

        async with session_factory() as session:
            notification = (await session.execute(select(Notification))).scalar_one()
            task = (await session.execute(select(Task))).scalar_one()

        assert notification.title == "Automation Notification"
        assert notification.message == "Jane Doe's job is done"
        assert notification.user_id == owner.id
        assert notification.entity_id == job.id
        assert task.title == "Call Jane"
        assert task.priority == "high"
        assert task.job_id == job.id
        assert task.created_by_automation == workflow.id

    async def test_success_updates_workflow_metrics(self, processor, make_workflow, make_log, session_factory):
        workflow = await make_workflow(steps=[SMS_STEP])
        await make_log(workflow)

        await processor.process_now()

        async with session_factory() as session:
            row = await session.get(AutomationWorkflow, workflow.id)
        assert row.execution_count == 1
        assert row.success_count == 1
        assert row.last_executed_at is not None
        assert row.last_triggered_at is not None

    async def test_update_job_status_action_writes_job(self, processor, make_workflow, make_log, log_store, session_factory, job):
        workflow = await make_workflow(steps=[
            {"type": "action", "config": {"actionType": "update_job_status", "newStatus": "invoiced"}},
        ])
        log = await make_log(workflow)

        await processor.process_now()

        stored = await _reload(log_store, log)
        assert stored.status == "completed"
        assert stored.details["step_results"]["0"]["output"] == {"job_id": job.id, "status": "invoiced"}
        async with session_factory() as session:
            row = await session.get(Job, job.id)
        assert row.status == "invoiced"

    async def test_sent_sms_is_logged_as_communication(self, processor, make_workflow, make_log, session_factory, owner, client_row, job):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow)

        await processor.process_now()

        async with session_factory() as session:
            communication = (await session.execute(select(CommunicationLog))).scalar_one()
        assert communication.type == "sms"
        assert communication.direction == "outbound"
        assert communication.to_address == "+15551234567"
        assert communication.content == "Hi Jane, thanks from Acme HVAC"
        assert communication.external_id == "sms-1"
        assert communication.user_id == owner.id
        assert communication.client_id == client_row.id
        assert communication.job_id == job.id
        assert communication.details["automation"]["execution_log_id"] == log.id


@pytest.mark.integration
class TestLifecycle:
    async def test_terminal_logs_are_not_reprocessed(self, processor, make_workflow, make_log, log_store, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow, status="completed")

        await processor.process_now()

        assert (await _reload(log_store, log)).status == "completed"
        assert sms_sender.calls == []

    async def test_process_now_refuses_overlapping_pass(self, processor, make_workflow, make_log, sms_sender):
        workflow = await make_workflow(steps=[SMS_STEP])
        await make_log(workflow)

        entered = asyncio.Event()
        release = asyncio.Event()
        original_send = sms_sender.send

        async def blocking_send(phone, message, correlation):
            entered.set()
            await release.wait()
            return await original_send(phone, message, correlation)

        sms_sender.send = blocking_send

        first = asyncio.create_task(processor.process_now())
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert processor.is_processing is True
        assert await processor.process_now() is False

        release.set()
        assert await first is True
        assert processor.is_processing is False

    async def test_start_runs_immediately_and_stop_drains(self, processor, make_workflow, make_log, log_store):
        workflow = await make_workflow(steps=[SMS_STEP])
        log = await make_log(workflow)

        await processor.start()
        await processor.start()  # no-op while running
        for _ in range(200):
            if processor._pass_task is not None:
                break
            await asyncio.sleep(0.01)
        await processor.stop(drain=True)

        assert (await _reload(log_store, log)).status == "completed"
        assert processor.is_running is False

    async def test_clear_old_pending_logs(self, processor, make_workflow, make_log, log_store, clock):
        workflow = await make_workflow(steps=[SMS_STEP])
        stale = await make_log(workflow, created_at=clock.now - timedelta(hours=2))
        fresh = await make_log(
            workflow,
            trigger_data={"entity_id": "other", "new_status": "completed"},
            created_at=clock.now - timedelta(minutes=10),
        )
        stale_running = await make_log(
            workflow,
            trigger_data={"entity_id": "third"},
            status="running",
            created_at=clock.now - timedelta(hours=3),
        )

        assert await processor.clear_old_pending_logs() == 1

        expired = await _reload(log_store, stale)
        assert expired.status == "expired"
        assert expired.error_message == PENDING_EXPIRED_MESSAGE
        assert (await _reload(log_store, fresh)).status == "pending"
        assert (await _reload(log_store, stale_running)).status == "running"

    async def test_health_status(self, processor, make_workflow, make_log):
        workflow = await make_workflow(steps=[SMS_STEP], is_active=False)
        await make_log(workflow)
        await make_log(workflow, trigger_data={"entity_id": "second", "new_status": "completed"})

        before = await processor.get_health_status()
        assert before["pending_count"] == 2
        assert before["is_running"] is False

        await processor.process_now()

        after = await processor.get_health_status()
        assert after == {
            "is_running": False,
            "is_processing": False,
            "pending_count": 0,
            "recent_failures": 2,
            "cache_size": 1,
            "processed_in_session_size": 2,
            "last_sweep_at": None,
        }

    async def test_processed_set_is_bounded(self, processor, make_workflow, make_log):
        processor.config.processed_set_max = 2
        workflow = await make_workflow(steps=[SMS_STEP])
        for index in range(3):
            await make_log(workflow, trigger_data={"entity_id": f"job-{index}", "new_status": "completed"})

        await processor.process_now()

        assert len(processor._processed) == 1

    async def test_fetch_exclusion_window_is_bounded(self, processor, make_workflow, make_log, log_store):
        processor.config.fetch_exclusion_window = 2
        workflow = await make_workflow(steps=[SMS_STEP])
        for index in range(3):
            await make_log(workflow, trigger_data={"entity_id": f"job-{index}", "new_status": "completed"})

        excluded = []
        original_fetch = log_store.fetch_pending

        async def recording_fetch(limit, exclude_ids=()):
            excluded.append(list(exclude_ids))
            return await original_fetch(limit, exclude_ids=exclude_ids)

        log_store.fetch_pending = recording_fetch

        await processor.process_now()
        await processor.process_now()

        assert len(processor._processed) == 3
        assert len(processor._recent) == 2
        assert excluded[0] == []
        assert len(excluded[1]) == 2

    async def test_sweep_timer_expires_stale_pending_logs(self, processor, make_workflow, make_log, log_store, clock):
        processor.config.batch_size = 0
        processor.config.sweep_interval_seconds = 0.05
        workflow = await make_workflow(steps=[SMS_STEP])
        stale = await make_log(workflow, created_at=clock.now - timedelta(hours=2))

        await processor.start()
        for _ in range(200):
            if processor._last_sweep_at is not None:
                break
            await asyncio.sleep(0.01)
        await processor.stop(drain=True)

        assert processor._last_sweep_at == clock.now
        expired = await _reload(log_store, stale)
        assert expired.status == "expired"
        assert expired.error_message == PENDING_EXPIRED_MESSAGE
        assert (await processor.get_health_status())["last_sweep_at"] == clock.now.isoformat()
