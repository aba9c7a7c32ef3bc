"""
Retry coordinator.

Owns the failed -> retrying | dead and retrying -> pending transitions, plus
cancellation of deliveries whose webhook was paused or deleted.
"""
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.config import settings
from alumni_hooks.errors import ExhaustedRetriesError
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.base import utcnow
from alumni_hooks.models.delivery import DeliveryStatus, WebhookDelivery
from alumni_hooks.models.webhook import Webhook
from alumni_hooks.routes.metrics import track_delivery_dead, track_retry_scheduled
from alumni_hooks.services.delivery_queue import DeliveryQueue


def backoff_seconds(attempt: int) -> float:
    """Exponential backoff ``base * 2**attempt``, capped. ``attempt`` is 1-based."""
    delay = settings.WEBHOOK_BACKOFF_BASE_SECONDS * (2 ** attempt)
    return min(delay, settings.WEBHOOK_BACKOFF_MAX_SECONDS)


def cancellation_reason(webhook: Webhook | None) -> str | None:
    """Why a delivery to this webhook must not be attempted, if anything."""
    if webhook is None:
        return "Webhook deleted"
    if not webhook.is_active:
        return "Webhook paused"
    return None


class RetryCoordinator:
    """Schedules retries and retires deliveries."""

    def __init__(self, db: AsyncSession, queue: DeliveryQueue):
        self.db = db
        self.queue = queue

    async def handle_failure(self, delivery: WebhookDelivery, webhook: Webhook | None) -> WebhookDelivery:
        """
        Decide what happens after a failed attempt.

        Schedules a deferred retry while attempts remain and the webhook is
        still active; otherwise marks the delivery DEAD.
        """
        if delivery.status != DeliveryStatus.FAILED:
            return delivery

        reason = cancellation_reason(webhook)
        if reason:
            return await self._mark_dead(delivery, f"Retry cancelled: {reason}")

        if delivery.attempt_count >= delivery.max_attempts:
            exhausted = ExhaustedRetriesError(delivery.attempt_count)
            last_error = delivery.error_message or "unknown error"
            return await self._mark_dead(delivery, f"{exhausted} (last error: {last_error})")

        delay = backoff_seconds(delivery.attempt_count)
        delivery.status = DeliveryStatus.RETRYING
        delivery.next_retry_at = utcnow() + timedelta(seconds=delay)
        await self.db.commit()

        track_retry_scheduled(delivery.tenant_id)
        get_logger(tenant_id=delivery.tenant_id, delivery_id=delivery.id).info(
            "delivery_retry_scheduled",
            attempt=delivery.attempt_count,
            max_attempts=delivery.max_attempts,
            delay_seconds=delay,
        )

        try:
            await self.queue.enqueue(delivery.id, attempt=delivery.attempt_count, delay=delay)
        except Exception as e:
            # Row stays RETRYING; the stale-delivery sweep re-enqueues it.
            get_logger(tenant_id=delivery.tenant_id).error(
                "retry_enqueue_failed",
                delivery_id=delivery.id,
                error=str(e),
            )
        return delivery

    async def fire(self, delivery: WebhookDelivery, webhook: Webhook | None) -> bool:
        """
        A scheduled retry came due.

        Returns True if the delivery is back in PENDING and should be sent,
        False if it was cancelled (marked DEAD) or is not in RETRYING.
        """
        if delivery.status != DeliveryStatus.RETRYING:
            return delivery.status == DeliveryStatus.PENDING

        reason = cancellation_reason(webhook)
        if reason:
            await self._mark_dead(delivery, f"Retry cancelled: {reason}")
            return False

        delivery.status = DeliveryStatus.PENDING
        delivery.next_retry_at = None
        await self.db.commit()
        return True

    async def cancel_if_ineligible(self, delivery: WebhookDelivery, webhook: Webhook | None) -> bool:
        """Mark a queued PENDING delivery DEAD if its webhook went away. Returns True if cancelled."""
        reason = cancellation_reason(webhook)
        if not reason or delivery.status != DeliveryStatus.PENDING:
            return False
        await self._mark_dead(delivery, f"Delivery cancelled: {reason}")
        return True

    async def _mark_dead(self, delivery: WebhookDelivery, reason: str) -> WebhookDelivery:
        delivery.status = DeliveryStatus.DEAD
        delivery.error_message = reason
        delivery.next_retry_at = None
        delivery.completed_at = utcnow()
        await self.db.commit()

        track_delivery_dead(delivery.tenant_id)
        get_logger(tenant_id=delivery.tenant_id, delivery_id=delivery.id).warning(
            "delivery_dead",
            attempts=delivery.attempt_count,
            reason=reason,
        )
        return delivery
