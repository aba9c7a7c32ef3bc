"""
Delivery executor.

Performs one outbound HTTP attempt for a pending delivery and records the
outcome on the row. Nothing raised by the endpoint or the network escapes
this module; failures become data (status ``failed`` + error_message).
"""
import time

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.config import settings
from alumni_hooks.errors import DeliveryError
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.base import utcnow
from alumni_hooks.models.delivery import DeliveryStatus, WebhookDelivery
from alumni_hooks.models.webhook import Webhook
from alumni_hooks.routes.metrics import track_delivery_attempt
from alumni_hooks.services.signature import canonical_json, generate_webhook_signature


def truncate(text: str | None, limit: int | None = None) -> str | None:
    if text is None:
        return None
    limit = limit or settings.WEBHOOK_RESPONSE_BODY_LIMIT
    return text if len(text) <= limit else text[:limit]


def build_headers(delivery: WebhookDelivery, webhook: Webhook, signature: str, attempt: int) -> httpx.Headers:
    """Custom webhook headers first; delivery headers replace them case-insensitively."""
    headers = httpx.Headers({str(k): str(v) for k, v in (webhook.headers or {}).items()})
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": settings.WEBHOOK_USER_AGENT,
        "X-Webhook-ID": webhook.id,
        "X-Event-Type": delivery.event_type,
        "X-Delivery-ID": delivery.id,
        "X-Attempt": str(attempt),
        "X-Timestamp": str(int(time.time())),
        "X-Signature": signature,
    })
    if delivery.retry_of_id:
        headers["X-Retry-Of"] = delivery.retry_of_id
    return headers


class DeliveryExecutor:
    """Sends a delivery and records the response."""

    def __init__(self, db: AsyncSession, http_client: httpx.AsyncClient):
        self.db = db
        self.http_client = http_client

    async def execute(self, delivery: WebhookDelivery, webhook: Webhook) -> WebhookDelivery:
        """
        Attempt the delivery once.

        Only PENDING deliveries are sent; anything else is returned unchanged.
        On return the delivery is SUCCESS (2xx) or FAILED, with attempt_count
        incremented and the response recorded.
        """
        log = get_logger(tenant_id=delivery.tenant_id, webhook_id=webhook.id, delivery_id=delivery.id)
        if delivery.status != DeliveryStatus.PENDING:
            log.warning("delivery_not_pending", status=delivery.status.value)
            return delivery

        attempt = delivery.attempt_count + 1
        body = canonical_json(delivery.payload)
        # Always the webhook's current secret and URL, not the ones at dispatch time.
        signature = generate_webhook_signature(body, webhook.secret)
        headers = build_headers(delivery, webhook, signature, attempt)

        response_code = None
        response_body = None
        error_message = None
        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                webhook.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=float(webhook.timeout_seconds),
            )
            response_code = response.status_code
            response_body = truncate(response.text)
            if not response.is_success:
                raise DeliveryError(f"HTTP {response.status_code}", response_code=response.status_code)
        except DeliveryError as e:
            error_message = str(e)
        except httpx.TimeoutException as e:
            error_message = f"Timeout after {webhook.timeout_seconds}s: {type(e).__name__}"
        except httpx.HTTPError as e:
            error_message = str(e) or type(e).__name__
        except Exception as e:
            log.exception("delivery_unexpected_error")
            error_message = f"Unexpected error: {e}"
        elapsed = time.perf_counter() - started

        delivery.attempt_count = attempt
        delivery.url = webhook.url
        delivery.signature = signature
        delivery.response_code = response_code
        delivery.response_body = response_body
        delivery.response_time_ms = int(elapsed * 1000)
        delivery.next_retry_at = None
        if error_message is None:
            delivery.status = DeliveryStatus.SUCCESS
            delivery.error_message = None
            delivery.completed_at = utcnow()
        else:
            delivery.status = DeliveryStatus.FAILED
            delivery.error_message = truncate(error_message)
        await self.db.commit()

        result = delivery.status.value
        track_delivery_attempt(delivery.tenant_id, result, elapsed)
        if error_message is None:
            log.info(
                "delivery_succeeded",
                attempt=attempt,
                response_code=response_code,
                duration_ms=delivery.response_time_ms,
            )
        else:
            log.warning(
                "delivery_failed",
                attempt=attempt,
                response_code=response_code,
                error=error_message,
            )
        return delivery
