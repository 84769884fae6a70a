"""Field Service Automation Engine - FastAPI Application.

The lifespan below is the composition root: it builds the stores, channel
senders and processor, and starts/stops the processor with the app.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from api.routes import automation, health
from automation.metrics import MetricsUpdater
from automation.processor import AutomationProcessor, ProcessorConfig
from automation.retry import FailureClassifier
from automation.steps import StepInterpreter
from automation.store import CrmStore, ExecutionLogStore, WorkflowStore
from automation.variables import VariableResolver
from automation.workflow_cache import WorkflowCache
from core.logging_config import setup_logging
from db.session import close_db, create_db_engine, create_session_factory, init_db
from notifications.channels import EmailSender, SmsSender, build_senders

logger = logging.getLogger(__name__)


def build_processor(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    sms_sender: Optional[SmsSender] = None,
    email_sender: Optional[EmailSender] = None,
) -> AutomationProcessor:
    """Wire an AutomationProcessor from settings and a session factory."""
    if sms_sender is None or email_sender is None:
        default_sms, default_email = build_senders(settings)
        sms_sender = sms_sender or default_sms
        email_sender = email_sender or default_email

    workflow_store = WorkflowStore(session_factory)
    crm_store = CrmStore(session_factory)

    return AutomationProcessor(
        log_store=ExecutionLogStore(session_factory),
        workflow_cache=WorkflowCache(
            workflow_store, ttl_seconds=settings.AUTOMATION_WORKFLOW_CACHE_TTL_SECONDS
        ),
        interpreter=StepInterpreter(
            crm_store,
            sms_sender,
            email_sender,
            inline_delay_max_seconds=settings.AUTOMATION_INLINE_DELAY_MAX_SECONDS,
        ),
        resolver=VariableResolver(
            crm_store,
            default_timezone=settings.DEFAULT_TIMEZONE,
            default_company_name=settings.DEFAULT_COMPANY_NAME,
        ),
        metrics=MetricsUpdater(
            workflow_store,
            allow_non_atomic_fallback=settings.AUTOMATION_ALLOW_NON_ATOMIC_METRICS,
        ),
        classifier=FailureClassifier(max_retries=settings.AUTOMATION_MAX_RETRIES),
        config=ProcessorConfig.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()
    settings.validate_channels()

    engine = create_db_engine(settings)
    await init_db(engine)
    session_factory = create_session_factory(engine)

    processor = build_processor(settings, session_factory)
    app.state.engine = engine
    app.state.processor = processor

    if settings.AUTOMATION_AUTOSTART:
        await processor.start()
    else:
        logger.info("[startup] Automation processor autostart disabled")

    logger.info(
        f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})"
    )
    yield
    # Shutdown
    await processor.stop(drain=True)
    await close_db(engine)
    logger.info("[shutdown] Application shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Background executor for field-service CRM automation workflows.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(automation.router, prefix="/api", tags=["Automation"])

    return app
