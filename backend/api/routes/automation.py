"""Automation processor control endpoints.

- GET  /automation/health       processor state and queue counters
- POST /automation/process-now  run one pass immediately
- POST /automation/clear-stale  expire pending logs older than the threshold
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from automation.processor import AutomationProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"])


def get_processor(request: Request) -> AutomationProcessor:
    """Processor built by the application lifespan."""
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Automation processor is not initialized",
        )
    return processor


@router.get("/health", response_model=dict[str, Any])
async def automation_health(
    processor: AutomationProcessor = Depends(get_processor),
) -> dict[str, Any]:
    return await processor.get_health_status()


@router.post("/process-now", response_model=dict[str, Any])
async def process_now(
    processor: AutomationProcessor = Depends(get_processor),
) -> dict[str, Any]:
    """Force a pass. ``started`` is false when a pass was already running."""
    started = await processor.process_now()
    if not started:
        logger.info("Manual pass requested while another pass is in flight")
    return {"started": started}


@router.post("/clear-stale", response_model=dict[str, Any])
async def clear_stale(
    processor: AutomationProcessor = Depends(get_processor),
) -> dict[str, Any]:
    expired = await processor.clear_old_pending_logs()
    return {"expired": expired}
