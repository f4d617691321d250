"""
ARQ Background Worker for WaHub.

Runs periodic maintenance: the hourly sweep that deactivates webhook
subscriptions with too many failed deliveries.

Run with: arq wahub.worker.WorkerSettings
"""
from arq import cron
from arq.connections import RedisSettings

from wahub.config import settings
from wahub.logging_config import configure_logging, get_logger
from wahub.repositories.webhooks import WebhookRepository
from wahub.sentry_config import capture_exception, configure_sentry
from wahub.services.delivery_queue import DelayQueue
from wahub.services.webhook_service import WebhookEngine


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    queue = DelayQueue(workers=1)
    await queue.start()
    ctx["delivery_queue"] = queue
    ctx["webhook_engine"] = WebhookEngine(WebhookRepository(), queue)


async def shutdown(ctx: dict) -> None:
    await ctx["delivery_queue"].stop()
    await ctx["webhook_engine"].aclose()


async def deactivate_failing_webhooks(ctx: dict, organisation_id: str | None = None) -> dict:
    """Sweep one organisation, or all of them when organisation_id is None."""
    log = get_logger(job="deactivate_failing_webhooks", job_try=ctx.get("job_try", 1))
    engine: WebhookEngine = ctx["webhook_engine"]
    try:
        deactivated = await engine.deactivate_failing_subscriptions(organisation_id)
    except Exception as e:
        log.error("webhook_sweep_failed", error=str(e))
        capture_exception()
        raise

    log.info("webhook_sweep_completed", org_id=organisation_id, deactivated=len(deactivated))
    return {"deactivated": deactivated}


ARQ_FUNCTIONS = [deactivate_failing_webhooks]


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq wahub.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 3
    functions = ARQ_FUNCTIONS
    cron_jobs = [
        cron(deactivate_failing_webhooks, minute=0, run_at_startup=False),
    ]
    on_startup = startup
    on_shutdown = shutdown
