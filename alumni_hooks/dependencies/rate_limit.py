"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Depends, HTTPException
from alumni_hooks.config import settings
from alumni_hooks.context import RequestContext
from alumni_hooks.dependencies.auth import get_request_context
from alumni_hooks.services.rate_limiter import rate_limiter


async def enforce_rate_limit(ctx: RequestContext = Depends(get_request_context)):
    """
    Check rate limit for the caller's tenant.

    Raises 429 if limit exceeded.
    """
    if not settings.RATE_LIMIT_ENABLED:
        return

    allowed, retry_after = await rate_limiter.is_allowed(ctx.tenant_id)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )
