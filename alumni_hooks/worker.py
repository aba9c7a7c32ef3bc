"""
ARQ background worker for webhook deliveries.

Run with: arq alumni_hooks.worker.WorkerSettings

Each job carries one delivery id. Retries are scheduled by the retry
coordinator as new deferred jobs, so ARQ's own retry (max_tries) only
covers infrastructure errors such as a lost database connection.
"""
import asyncio

import httpx
from arq import Retry, cron
from arq.connections import RedisSettings
from sqlalchemy.exc import SQLAlchemyError

from alumni_hooks.config import settings
from alumni_hooks.database import AsyncSessionLocal
from alumni_hooks.logging_config import configure_logging, get_logger
from alumni_hooks.models.base import utcnow
from alumni_hooks.sentry_config import capture_exception, configure_sentry
from alumni_hooks.services.delivery_queue import ArqDeliveryQueue
from alumni_hooks.services.pipeline import process_delivery, requeue_stale


logger = get_logger(component="worker")


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    ctx["http_client"] = httpx.AsyncClient(follow_redirects=False)
    ctx["session_factory"] = AsyncSessionLocal
    ctx["queue"] = ArqDeliveryQueue(pool=ctx["redis"])
    logger.info("worker_started", redis=settings.REDIS_URL, max_jobs=settings.WEBHOOK_WORKER_CONCURRENCY)


async def shutdown(ctx: dict) -> None:
    await ctx["http_client"].aclose()
    logger.info("worker_stopped")


async def deliver_webhook(ctx: dict, delivery_id: str) -> str | None:
    """Process one delivery attempt."""
    # ARQ uses job_try (starts at 1) and max_tries in context
    job_try = ctx.get("job_try", 1)
    log = logger.bind(delivery_id=delivery_id, job_try=job_try)

    try:
        status = await process_delivery(
            delivery_id,
            ctx["session_factory"],
            ctx["http_client"],
            ctx["queue"],
        )
    except SQLAlchemyError:
        log.exception("delivery_job_database_error")
        capture_exception(delivery_id=delivery_id)
        raise Retry(defer=job_try * 5)
    except Exception:
        log.exception("delivery_job_failed")
        capture_exception(delivery_id=delivery_id)
        raise

    log.info("delivery_job_done", status=status)
    return status


async def requeue_stale_deliveries(ctx: dict) -> int:
    """Cron: re-enqueue deliveries whose queue message was lost."""
    return await requeue_stale(ctx["session_factory"], ctx["queue"], utcnow())


async def main():
    """Run the worker using arq cli."""
    logger.info("worker_usage", command="arq alumni_hooks.worker.WorkerSettings", redis=settings.REDIS_URL)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq alumni_hooks.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [deliver_webhook]
    cron_jobs = [
        cron(requeue_stale_deliveries, minute=set(range(0, 60, 5)), run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.WEBHOOK_WORKER_CONCURRENCY
    job_timeout = settings.WEBHOOK_MAX_TIMEOUT_SECONDS + 30
    max_tries = 3


if __name__ == "__main__":
    asyncio.run(main())
