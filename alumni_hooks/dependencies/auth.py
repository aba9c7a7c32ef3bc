"""
Authentication dependencies for FastAPI.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ValidationError
from alumni_hooks.context import RequestContext
from alumni_hooks.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str      # user_id
    org_id: str   # tenant_id
    role: str
    email: str


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.
    """
    jwt_service = JWTService()

    invalid = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = jwt_service.verify_token(credentials.credentials)
    if payload is None:
        raise invalid

    try:
        return TokenPayload(**payload)
    except ValidationError:
        # Signed but missing claims
        raise invalid


async def get_request_context(
    request: Request,
    token: TokenPayload = Depends(get_current_user)
) -> RequestContext:
    """
    Dependency that turns the verified token into an explicit RequestContext.

    Also records tenant/user on request.state for the logging middleware.

    Usage:
        @router.get("/webhooks")
        async def list_webhooks(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    request.state.tenant_id = token.org_id
    request.state.user_id = token.sub
    return RequestContext(user_id=token.sub, tenant_id=token.org_id, role=token.role)
