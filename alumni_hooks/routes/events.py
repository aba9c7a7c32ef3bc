"""
Event trigger route.

Lets platform producers publish an application event into the caller's
tenant; matching webhooks get a queued delivery each.
"""
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.context import RequestContext
from alumni_hooks.database import get_db
from alumni_hooks.dependencies.auth import get_request_context
from alumni_hooks.dependencies.rate_limit import enforce_rate_limit
from alumni_hooks.dependencies.services import get_delivery_queue
from alumni_hooks.routes.webhooks import delivery_to_dict
from alumni_hooks.services.delivery_queue import DeliveryQueue
from alumni_hooks.services.dispatcher import DeliveryDispatcher


router = APIRouter(
    prefix="/api/events",
    tags=["events"],
    dependencies=[Depends(enforce_rate_limit)],
)


class TriggerEventRequest(BaseModel):
    """Request model for publishing an event."""
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    owner_only: bool = False


@router.post("", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def trigger_event(
    request: TriggerEventRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    queue: DeliveryQueue = Depends(get_delivery_queue)
):
    """
    Publish an event.

    Returns immediately with the queued deliveries; sending happens in the
    delivery workers. ``owner_only`` limits fan-out to the caller's webhooks.
    """
    deliveries = await DeliveryDispatcher(db, queue).dispatch(
        ctx.tenant_id,
        request.event,
        request.data,
        owner_id=ctx.user_id if request.owner_only else None,
    )
    return {
        "success": True,
        "data": [delivery_to_dict(d) for d in deliveries],
        "message": f"Event dispatched to {len(deliveries)} webhook(s)",
    }
