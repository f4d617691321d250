"""
WaHub API - Multi-tenant WhatsApp gateway

FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Import observability modules
from wahub.config import settings
from wahub.database import engine as db_engine
from wahub.logging_config import configure_logging
from wahub.sentry_config import configure_sentry
from wahub.middleware.logging import LoggingMiddleware
from wahub.routes.metrics import router as metrics_router

# Import route modules
from wahub.routes.messages import router as messages_router
from wahub.routes.transport import router as transport_router
from wahub.routes.webhooks import router as webhooks_router

from wahub.repositories.ban_alerts import BanAlertRepository
from wahub.repositories.organisations import OrganisationRepository
from wahub.repositories.webhooks import WebhookRepository
from wahub.services.admission_gate import AdmissionGate
from wahub.services.delivery_queue import DelayQueue
from wahub.services.message_service import MessageDispatcher, ban_alert_sink
from wahub.services.transport import HttpTransport, TransportEventStream
from wahub.services.webhook_service import WebhookEngine

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the long-lived services, tear them down on shutdown."""
    configure_logging()
    configure_sentry()

    queue = DelayQueue(workers=settings.WEBHOOK_WORKERS)
    await queue.start()

    alerts = BanAlertRepository()
    webhook_engine = WebhookEngine(WebhookRepository(), queue)
    gate = AdmissionGate(alert_sink=ban_alert_sink(alerts))

    app.state.delivery_queue = queue
    app.state.webhook_engine = webhook_engine
    app.state.admission_gate = gate
    app.state.dispatcher = None
    app.state.transport_events = None

    transport = None
    consumer = None
    if settings.TRANSPORT_URL:
        transport = HttpTransport(settings.TRANSPORT_URL)
        dispatcher = MessageDispatcher(
            gate,
            webhook_engine,
            transport,
            alerts=alerts,
            organisations=OrganisationRepository(),
        )
        events = TransportEventStream()
        consumer = asyncio.create_task(dispatcher.consume(events), name="transport-events")
        app.state.dispatcher = dispatcher
        app.state.transport_events = events
    else:
        logger.warning("transport_disabled", reason="TRANSPORT_URL not set")

    logger.info("app_started", environment=settings.ENVIRONMENT)
    try:
        yield
    finally:
        if consumer is not None:
            app.state.transport_events.close()
            try:
                await asyncio.wait_for(consumer, timeout=5)
            except asyncio.TimeoutError:
                consumer.cancel()
        await queue.stop()
        await webhook_engine.aclose()
        if transport is not None:
            await transport.aclose()
        logger.info("app_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-tenant WhatsApp gateway with admission control and signed webhooks",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(webhooks_router)
app.include_router(messages_router)
app.include_router(transport_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    try:
        async with db_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.error("health_database_unreachable", error=str(e))
        database = "unreachable"

    queue = getattr(app.state, "delivery_queue", None)
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "webhook_queue_pending": queue.pending if queue is not None else None,
        "transport": "configured" if getattr(app.state, "dispatcher", None) else "disabled",
    }
