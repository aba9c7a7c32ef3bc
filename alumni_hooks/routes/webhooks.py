"""
Webhook API routes.

Registration management, test/manual deliveries, delivery history and
statistics. Every response uses the ``{success, data?, message?}`` envelope.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import math
from typing import Any

import httpx
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.context import RequestContext
from alumni_hooks.database import get_db
from alumni_hooks.dependencies.auth import get_request_context
from alumni_hooks.dependencies.rate_limit import enforce_rate_limit
from alumni_hooks.dependencies.services import get_delivery_queue, get_http_client
from alumni_hooks.models.base import as_utc
from alumni_hooks.models.delivery import WebhookDelivery
from alumni_hooks.models.webhook import Webhook
from alumni_hooks.services.delivery_queue import DeliveryQueue
from alumni_hooks.services.dispatcher import DeliveryDispatcher
from alumni_hooks.services.event_catalog import list_events
from alumni_hooks.services.pipeline import send_test
from alumni_hooks.services.registry import WebhookRegistry
from alumni_hooks.services.statistics import StatisticsService


router = APIRouter(
    prefix="/api/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(enforce_rate_limit)],
)


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    url: str
    events: list[str]
    secret: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int | None = None
    max_attempts: int | None = None


class UpdateWebhookRequest(BaseModel):
    """Request model for a partial webhook update."""
    url: str | None = None
    events: list[str] | None = None
    secret: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    headers: dict[str, str] | None = None
    timeout_seconds: int | None = None
    max_attempts: int | None = None


class ValidateUrlRequest(BaseModel):
    """Request model for URL validation."""
    url: str
    probe: bool = True


def _iso(value) -> str | None:
    return as_utc(value).isoformat() if value else None


def webhook_to_dict(webhook: Webhook, include_secret: bool = False) -> dict[str, Any]:
    """Convert Webhook model to its API representation. The secret is only shown on creation."""
    data = {
        "id": webhook.id,
        "owner_id": webhook.owner_id,
        "url": webhook.url,
        "events": list(webhook.events or []),
        "status": webhook.status.value,
        "name": webhook.name,
        "description": webhook.description,
        "headers": dict(webhook.headers or {}),
        "timeout_seconds": webhook.timeout_seconds,
        "max_attempts": webhook.max_attempts,
        "created_at": _iso(webhook.created_at),
        "updated_at": _iso(webhook.updated_at),
    }
    if include_secret:
        data["secret"] = webhook.secret
    return data


def delivery_to_dict(delivery: WebhookDelivery) -> dict[str, Any]:
    """Convert WebhookDelivery model to its API representation."""
    return {
        "id": delivery.id,
        "webhook_id": delivery.webhook_id,
        "event_type": delivery.event_type,
        "status": delivery.status.value,
        "payload": delivery.payload,
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
        "response_time_ms": delivery.response_time_ms,
        "attempt_count": delivery.attempt_count,
        "max_attempts": delivery.max_attempts,
        "error_message": delivery.error_message,
        "next_retry_at": _iso(delivery.next_retry_at),
        "retry_of_id": delivery.retry_of_id,
        "created_at": _iso(delivery.created_at),
        "completed_at": _iso(delivery.completed_at),
    }


def paginated(items: list[dict], total: int, page: int, per_page: int) -> dict[str, Any]:
    return {
        "items": items,
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "pages": math.ceil(total / per_page) if total else 0,
        },
    }


@router.get("", response_model=dict)
async def list_webhooks(
    status_filter: str | None = Query(default=None, alias="status"),
    event: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """List webhooks, filterable by status and subscribed event."""
    webhooks, total = await WebhookRegistry(db).list_webhooks(
        ctx, status=status_filter, event=event, page=page, per_page=per_page
    )
    return {
        "success": True,
        "data": paginated([webhook_to_dict(w) for w in webhooks], total, page, per_page),
    }


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a webhook.

    The signing secret is returned once, in this response.
    """
    webhook = await WebhookRegistry(db).create(ctx, **request.model_dump())
    return {
        "success": True,
        "data": webhook_to_dict(webhook, include_secret=True),
        "message": "Webhook created successfully",
    }


@router.get("/events", response_model=dict)
async def get_events(ctx: RequestContext = Depends(get_request_context)):
    """Catalog of events a webhook can subscribe to."""
    return {"success": True, "data": list_events()}


@router.post("/validate-url", response_model=dict)
async def validate_url(
    request: ValidateUrlRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_http_client)
):
    """Check URL format and, optionally, reachability."""
    result = await WebhookRegistry(db, http_client).validate_url(request.url, probe=request.probe)
    return {"success": True, "data": result}


@router.get("/{webhook_id}", response_model=dict)
async def get_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    webhook = await WebhookRegistry(db).get(ctx, webhook_id)
    return {"success": True, "data": webhook_to_dict(webhook)}


@router.put("/{webhook_id}", response_model=dict)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """Partial update; omitted fields are left unchanged."""
    webhook = await WebhookRegistry(db).update(ctx, webhook_id, request.model_dump(exclude_unset=True))
    return {
        "success": True,
        "data": webhook_to_dict(webhook),
        "message": "Webhook updated successfully",
    }


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """Remove the webhook. Its delivery history is kept."""
    await WebhookRegistry(db).delete(ctx, webhook_id)
    return {"success": True, "message": "Webhook deleted successfully"}


@router.post("/{webhook_id}/pause", response_model=dict)
async def pause_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    webhook = await WebhookRegistry(db).pause(ctx, webhook_id)
    return {"success": True, "data": webhook_to_dict(webhook), "message": "Webhook paused"}


@router.post("/{webhook_id}/resume", response_model=dict)
async def resume_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    webhook = await WebhookRegistry(db).resume(ctx, webhook_id)
    return {"success": True, "data": webhook_to_dict(webhook), "message": "Webhook resumed"}


@router.post("/{webhook_id}/test", response_model=dict)
async def test_webhook(
    webhook_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    queue: DeliveryQueue = Depends(get_delivery_queue)
):
    """
    Send a ``webhook.test`` event synchronously.

    Returns the delivery record with the endpoint's response.
    """
    delivery = await send_test(db, ctx, webhook_id, http_client, queue)
    return {
        "success": True,
        "data": delivery_to_dict(delivery),
        "message": "Test webhook sent",
    }


@router.get("/{webhook_id}/deliveries", response_model=dict)
async def list_deliveries(
    webhook_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """Delivery history, newest first."""
    deliveries, total = await StatisticsService(db).deliveries(
        ctx, webhook_id, status=status_filter, page=page, per_page=per_page
    )
    return {
        "success": True,
        "data": paginated([delivery_to_dict(d) for d in deliveries], total, page, per_page),
    }


@router.post("/{webhook_id}/deliveries/{delivery_id}/retry", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def retry_delivery(
    webhook_id: str,
    delivery_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    queue: DeliveryQueue = Depends(get_delivery_queue)
):
    """Queue a fresh delivery of a settled delivery's payload."""
    delivery = await DeliveryDispatcher(db, queue).redeliver(ctx, webhook_id, delivery_id)
    return {
        "success": True,
        "data": delivery_to_dict(delivery),
        "message": "Delivery queued for retry",
    }


@router.get("/{webhook_id}/statistics", response_model=dict)
async def get_statistics(
    webhook_id: str,
    period: str = "30d",
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db)
):
    """Delivery statistics for 1d, 7d, 30d, 90d or 1y."""
    stats = await StatisticsService(db).statistics(ctx, webhook_id, period=period)
    return {"success": True, "data": stats}
