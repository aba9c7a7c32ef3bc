"""
Delivery statistics and history queries.

Read-only: nothing here writes to the database.
"""
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.context import RequestContext
from alumni_hooks.models.base import as_utc, utcnow
from alumni_hooks.models.delivery import DeliveryStatus, WebhookDelivery
from alumni_hooks.services.registry import WebhookRegistry


PERIODS: dict[str, timedelta] = {
    "1d": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}
DEFAULT_PERIOD = "30d"


def resolve_period(period: str | None) -> str:
    """Unknown or missing periods fall back to 30 days."""
    return period if period in PERIODS else DEFAULT_PERIOD


def success_rate(successes: int, dead: int) -> float:
    """successes / (successes + dead); 0.0 when nothing has settled."""
    settled = successes + dead
    if settled == 0:
        return 0.0
    return successes / settled


class StatisticsService:
    """Aggregates delivery history for a webhook."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def statistics(
        self,
        ctx: RequestContext,
        webhook_id: str,
        period: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Summarize deliveries created within ``period``.

        Returns counts per status, success rate, latency figures, the five
        most common response codes and an event type breakdown.
        """
        webhook = await WebhookRegistry(self.db).get(ctx, webhook_id)
        period = resolve_period(period)
        start = (now or utcnow()) - PERIODS[period]

        window = (
            WebhookDelivery.webhook_id == webhook.id,
            WebhookDelivery.tenant_id == ctx.tenant_id,
            WebhookDelivery.created_at >= start,
        )

        status_rows = await self.db.execute(
            select(WebhookDelivery.status, func.count())
            .where(*window)
            .group_by(WebhookDelivery.status)
        )
        counts = {status.value: 0 for status in DeliveryStatus}
        for status, count in status_rows.all():
            key = status.value if isinstance(status, DeliveryStatus) else str(status)
            counts[key] = int(count)
        total = sum(counts.values())

        code_rows = await self.db.execute(
            select(WebhookDelivery.response_code, func.count().label("n"))
            .where(*window, WebhookDelivery.response_code.is_not(None))
            .group_by(WebhookDelivery.response_code)
            .order_by(func.count().desc(), WebhookDelivery.response_code)
            .limit(5)
        )
        response_codes = {str(code): int(n) for code, n in code_rows.all()}

        event_rows = await self.db.execute(
            select(WebhookDelivery.event_type, func.count().label("n"))
            .where(*window)
            .group_by(WebhookDelivery.event_type)
            .order_by(func.count().desc(), WebhookDelivery.event_type)
        )
        event_types = {event: int(n) for event, n in event_rows.all()}

        avg_response_ms = await self.db.scalar(
            select(func.avg(WebhookDelivery.response_time_ms))
            .where(
                *window,
                WebhookDelivery.status == DeliveryStatus.SUCCESS,
                WebhookDelivery.response_time_ms.is_not(None)
            )
        )

        # Timestamp arithmetic differs per backend; computed here instead of in SQL.
        timing_rows = await self.db.execute(
            select(WebhookDelivery.created_at, WebhookDelivery.completed_at)
            .where(
                *window,
                WebhookDelivery.status == DeliveryStatus.SUCCESS,
                WebhookDelivery.completed_at.is_not(None)
            )
        )
        latencies = [
            (as_utc(completed) - as_utc(created)).total_seconds()
            for created, completed in timing_rows.all()
        ]

        last_delivery = await self.db.scalar(
            select(func.max(WebhookDelivery.created_at)).where(*window)
        )

        successes = counts[DeliveryStatus.SUCCESS.value]
        dead = counts[DeliveryStatus.DEAD.value]
        return {
            "period": period,
            "total_deliveries": total,
            "successful_deliveries": successes,
            "dead_deliveries": dead,
            "failed_deliveries": counts[DeliveryStatus.FAILED.value],
            "retrying_deliveries": counts[DeliveryStatus.RETRYING.value],
            "pending_deliveries": counts[DeliveryStatus.PENDING.value],
            "success_rate": success_rate(successes, dead),
            "average_latency_seconds": round(sum(latencies) / len(latencies), 3) if latencies else None,
            "average_response_time_ms": round(float(avg_response_ms), 2) if avg_response_ms is not None else None,
            "response_codes": response_codes,
            "event_types": event_types,
            "last_delivery_at": as_utc(last_delivery).isoformat() if last_delivery else None,
        }

    async def deliveries(
        self,
        ctx: RequestContext,
        webhook_id: str,
        status: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[WebhookDelivery], int]:
        """Paginated delivery history for a webhook, newest first."""
        webhook = await WebhookRegistry(self.db).get(ctx, webhook_id)

        conditions = [
            WebhookDelivery.webhook_id == webhook.id,
            WebhookDelivery.tenant_id == ctx.tenant_id,
        ]
        if status:
            try:
                conditions.append(WebhookDelivery.status == DeliveryStatus(status))
            except ValueError:
                return [], 0

        total = await self.db.scalar(
            select(func.count()).select_from(WebhookDelivery).where(*conditions)
        )
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), int(total or 0)
