"""
Shared resources for route handlers.

The HTTP client and the delivery queue are created once in the application
lifespan and stored on ``app.state``.
"""
import httpx
from fastapi import HTTPException, Request, status

from alumni_hooks.services.delivery_queue import DeliveryQueue


def get_http_client(request: Request) -> httpx.AsyncClient:
    client = getattr(request.app.state, "http_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="HTTP client not initialised"
        )
    return client


def get_delivery_queue(request: Request) -> DeliveryQueue:
    queue = getattr(request.app.state, "delivery_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery queue not initialised"
        )
    return queue
