"""
Delivery pipeline.

Entry points used by both queue backends:

- process_delivery: handle one queued delivery id (idempotent)
- run_attempt: execute once, then hand failures to the retry coordinator
- send_test: synchronous single-attempt test delivery
- requeue_stale: re-enqueue deliveries whose queue message was lost
"""
from datetime import datetime, timedelta

import httpx
from sqlalchemy import or_, and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alumni_hooks.config import settings
from alumni_hooks.context import RequestContext
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.delivery import DeliveryStatus, WebhookDelivery
from alumni_hooks.models.webhook import Webhook
from alumni_hooks.services.delivery_queue import DeliveryQueue
from alumni_hooks.services.dispatcher import DeliveryDispatcher
from alumni_hooks.services.executor import DeliveryExecutor
from alumni_hooks.services.retry import RetryCoordinator


logger = get_logger(component="pipeline")


async def run_attempt(
    db: AsyncSession,
    delivery: WebhookDelivery,
    webhook: Webhook,
    http_client: httpx.AsyncClient,
    queue: DeliveryQueue,
) -> WebhookDelivery:
    """Send a PENDING delivery once and apply the retry policy on failure."""
    delivery = await DeliveryExecutor(db, http_client).execute(delivery, webhook)
    if delivery.status == DeliveryStatus.FAILED:
        delivery = await RetryCoordinator(db, queue).handle_failure(delivery, webhook)
    return delivery


async def send_test(
    db: AsyncSession,
    ctx: RequestContext,
    webhook_id: str,
    http_client: httpx.AsyncClient,
    queue: DeliveryQueue,
) -> WebhookDelivery:
    """Send a `webhook.test` event now. Test deliveries get one attempt, so a failure ends DEAD."""
    delivery, webhook = await DeliveryDispatcher(db, queue).create_test_delivery(ctx, webhook_id)
    return await run_attempt(db, delivery, webhook, http_client, queue)


async def process_delivery(
    delivery_id: str,
    session_factory: async_sessionmaker,
    http_client: httpx.AsyncClient,
    queue: DeliveryQueue,
) -> str | None:
    """
    Process one queued delivery id.

    Duplicate or late messages are harmless: terminal deliveries are skipped,
    RETRYING deliveries pass through the coordinator first, and a FAILED row
    left by an interrupted worker gets its retry decision.

    Returns:
        The delivery status after processing, or None if the row is gone
    """
    async with session_factory() as db:
        delivery = await db.get(WebhookDelivery, delivery_id)
        if delivery is None:
            logger.warning("delivery_missing", delivery_id=delivery_id)
            return None

        if delivery.is_terminal:
            logger.info("delivery_already_settled", delivery_id=delivery_id, status=delivery.status.value)
            return delivery.status.value

        webhook = await db.get(Webhook, delivery.webhook_id)
        coordinator = RetryCoordinator(db, queue)

        if delivery.status == DeliveryStatus.FAILED:
            delivery = await coordinator.handle_failure(delivery, webhook)
            return delivery.status.value

        if delivery.status == DeliveryStatus.RETRYING:
            if not await coordinator.fire(delivery, webhook):
                return delivery.status.value
        elif await coordinator.cancel_if_ineligible(delivery, webhook):
            return delivery.status.value

        delivery = await run_attempt(db, delivery, webhook, http_client, queue)
        return delivery.status.value


async def requeue_stale(
    session_factory: async_sessionmaker,
    queue: DeliveryQueue,
    now: datetime,
    limit: int = 500,
) -> int:
    """
    Re-enqueue deliveries that should have been processed by now.

    PENDING rows untouched for WEBHOOK_STALE_MINUTES and RETRYING rows whose
    retry is that overdue. Returns the number re-enqueued.
    """
    cutoff = now - timedelta(minutes=settings.WEBHOOK_STALE_MINUTES)
    stmt = (
        select(WebhookDelivery.id, WebhookDelivery.attempt_count)
        .where(
            or_(
                and_(
                    WebhookDelivery.status == DeliveryStatus.PENDING,
                    WebhookDelivery.updated_at < cutoff
                ),
                and_(
                    WebhookDelivery.status == DeliveryStatus.RETRYING,
                    WebhookDelivery.next_retry_at < cutoff
                ),
            )
        )
        .order_by(WebhookDelivery.created_at)
        .limit(limit)
    )
    async with session_factory() as db:
        rows = (await db.execute(stmt)).all()

    for delivery_id, attempt_count in rows:
        await queue.enqueue(delivery_id, attempt=attempt_count, dedupe=False)

    if rows:
        logger.info("stale_deliveries_requeued", count=len(rows))
    return len(rows)
