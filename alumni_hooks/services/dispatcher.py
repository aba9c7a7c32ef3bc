"""
Delivery dispatcher.

Turns an application event into one pending delivery per matching webhook
and hands the delivery ids to the work queue. Dispatch never waits on the
outbound HTTP calls.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.context import RequestContext
from alumni_hooks.errors import NotFoundError, ValidationError
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.base import utcnow
from alumni_hooks.models.delivery import DeliveryStatus, SETTLED_STATUSES, WebhookDelivery
from alumni_hooks.models.webhook import Webhook, WebhookStatus
from alumni_hooks.routes.metrics import track_delivery_dispatched
from alumni_hooks.services.delivery_queue import DeliveryQueue
from alumni_hooks.services.event_catalog import TEST_EVENT, is_known_event
from alumni_hooks.services.registry import WebhookRegistry
from alumni_hooks.services.signature import encode_body, sign_payload


def build_envelope(event_type: str, data: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
    """Wrap event data in the envelope receivers get."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "event": event_type,
        "timestamp": utcnow().isoformat(),
        "data": data,
    }


class DeliveryDispatcher:
    """Creates deliveries for events and enqueues them."""

    def __init__(self, db: AsyncSession, queue: DeliveryQueue):
        self.db = db
        self.queue = queue

    async def dispatch(
        self,
        tenant_id: str,
        event_type: str,
        data: dict[str, Any],
        owner_id: str | None = None,
    ) -> list[WebhookDelivery]:
        """
        Fan an event out to every active subscribed webhook in the tenant.

        Args:
            tenant_id: Tenant the event happened in
            event_type: Catalog event name
            data: Event data, snapshotted into each delivery
            owner_id: Narrow the fan-out to one owner's webhooks

        Returns:
            The created deliveries, all in PENDING status

        Raises:
            ValidationError: if the event is not in the catalog or the data
                cannot be encoded as UTF-8
        """
        if not is_known_event(event_type):
            raise ValidationError(f"Unknown event: {event_type}")
        try:
            encode_body(data)
        except UnicodeEncodeError:
            raise ValidationError("Event data must be valid UTF-8 text")

        stmt = select(Webhook).where(
            Webhook.tenant_id == tenant_id,
            Webhook.status == WebhookStatus.ACTIVE
        )
        if owner_id:
            stmt = stmt.where(Webhook.owner_id == owner_id)
        result = await self.db.execute(stmt.order_by(Webhook.created_at))
        webhooks = [w for w in result.scalars().all() if w.subscribes_to(event_type)]

        log = get_logger(tenant_id=tenant_id, event_type=event_type)
        if not webhooks:
            log.info("event_no_subscribers")
            return []

        envelope = build_envelope(event_type, data)
        deliveries = [self._new_delivery(webhook, event_type, envelope) for webhook in webhooks]
        self.db.add_all(deliveries)
        await self.db.commit()

        for delivery in deliveries:
            track_delivery_dispatched(tenant_id, event_type)
            await self._enqueue(delivery)

        log.info("event_dispatched", event_id=envelope["id"], deliveries=len(deliveries))
        return deliveries

    async def create_test_delivery(self, ctx: RequestContext, webhook_id: str) -> tuple[WebhookDelivery, Webhook]:
        """
        Create a single-attempt ``webhook.test`` delivery.

        The caller executes it synchronously; it is not enqueued.
        """
        webhook = await WebhookRegistry(self.db).get(ctx, webhook_id)
        if not webhook.is_active:
            raise ValidationError("Webhook is paused")

        envelope = build_envelope(
            TEST_EVENT,
            {
                "message": "This is a test webhook delivery",
                "webhook_id": webhook.id,
                "test": True,
            },
            event_id=f"test_{uuid.uuid4().hex[:10]}",
        )
        delivery = self._new_delivery(webhook, TEST_EVENT, envelope, max_attempts=1)
        self.db.add(delivery)
        await self.db.commit()
        return delivery, webhook

    async def redeliver(self, ctx: RequestContext, webhook_id: str, delivery_id: str) -> WebhookDelivery:
        """
        Manually retry a settled delivery.

        Creates a new delivery with the original payload and a fresh attempt
        budget; the original row is left untouched.
        """
        webhook = await WebhookRegistry(self.db).get(ctx, webhook_id)

        stmt = select(WebhookDelivery).where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.webhook_id == webhook.id,
            WebhookDelivery.tenant_id == ctx.tenant_id
        )
        result = await self.db.execute(stmt)
        original = result.scalar_one_or_none()
        if not original:
            raise NotFoundError("Delivery not found")
        if original.status not in SETTLED_STATUSES:
            raise ValidationError(f"Delivery is still in flight ({original.status.value})")
        if not webhook.is_active:
            raise ValidationError("Webhook is paused")

        delivery = self._new_delivery(webhook, original.event_type, original.payload)
        delivery.retry_of_id = original.id
        self.db.add(delivery)
        await self.db.commit()

        await self._enqueue(delivery)
        get_logger(tenant_id=ctx.tenant_id, user_id=ctx.user_id).info(
            "delivery_redelivered",
            webhook_id=webhook.id,
            delivery_id=delivery.id,
            retry_of_id=original.id,
        )
        return delivery

    def _new_delivery(
        self,
        webhook: Webhook,
        event_type: str,
        envelope: dict[str, Any],
        max_attempts: int | None = None,
    ) -> WebhookDelivery:
        _, signature = sign_payload(envelope, webhook.secret)
        return WebhookDelivery(
            id=str(uuid.uuid4()),
            webhook_id=webhook.id,
            tenant_id=webhook.tenant_id,
            event_type=event_type,
            url=webhook.url,
            payload=envelope,
            signature=signature,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            max_attempts=max_attempts or webhook.max_attempts,
        )

    async def _enqueue(self, delivery: WebhookDelivery) -> None:
        # Rows stay pending when the queue is down; the stale-delivery sweep picks them up.
        try:
            await self.queue.enqueue(delivery.id, attempt=delivery.attempt_count)
        except Exception as e:
            get_logger(tenant_id=delivery.tenant_id).error(
                "delivery_enqueue_failed",
                delivery_id=delivery.id,
                error=str(e),
            )
