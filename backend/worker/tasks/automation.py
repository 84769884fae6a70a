"""Celery tasks driving the automation processor.

``process_pending_automations`` is the beat-driven alternative to the
in-process poll timer; ``clear_stale_pending_logs`` is the pending-log
expiry sweep. Each task runs on a fresh event loop with its own engine.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from app.config import get_settings
from app.main import build_processor
from automation.processor import AutomationProcessor
from db.session import close_db, create_db_engine, create_session_factory
from worker.celery_app import AUTOMATION_QUEUE, celery_app

logger = logging.getLogger(__name__)


async def _with_processor(action: Callable[[AutomationProcessor], Awaitable[dict]]) -> dict:
    settings = get_settings()
    engine = create_db_engine(settings)
    try:
        processor = build_processor(settings, create_session_factory(engine))
        return await action(processor)
    finally:
        await close_db(engine)


def _run(action: Callable[[AutomationProcessor], Awaitable[dict]]) -> dict:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_with_processor(action))
    finally:
        loop.close()


async def _process(processor: AutomationProcessor) -> dict:
    attempted = await processor.process_pending_logs()
    return {"attempted": attempted}


async def _sweep(processor: AutomationProcessor) -> dict:
    expired = await processor.clear_old_pending_logs()
    return {"expired": expired}


@celery_app.task(
    name="worker.tasks.automation.process_pending_automations",
    queue=AUTOMATION_QUEUE,
)
def process_pending_automations():
    """Run one automation pass (every poll interval via beat)."""
    try:
        result = _run(_process)
        if result["attempted"]:
            logger.info("Automation pass completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Automation pass failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}


@celery_app.task(
    name="worker.tasks.automation.clear_stale_pending_logs",
    queue=AUTOMATION_QUEUE,
)
def clear_stale_pending_logs():
    """Expire pending logs older than the expiry threshold (every 10 minutes)."""
    try:
        result = _run(_sweep)
        logger.info("Stale pending sweep completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Stale pending sweep failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
