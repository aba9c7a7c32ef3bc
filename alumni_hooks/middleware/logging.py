"""
Logging middleware for request/response logging.

Logs every HTTP request with timing and tenant context, and records the
request metrics.
"""
import time

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from alumni_hooks.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: tenant_id, user_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            self._bind(request).error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            track_request(request.method, self._endpoint(request), 500, duration)
            raise

        duration = time.perf_counter() - start_time

        # tenant and user are set on request.state by the auth dependency
        self._bind(request).info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, self._endpoint(request), response.status_code, duration)

        return response

    @staticmethod
    def _bind(request: Request):
        tenant_id = getattr(request.state, "tenant_id", None)
        user_id = getattr(request.state, "user_id", None)
        return logger.bind(
            tenant_id=str(tenant_id) if tenant_id else None,
            user_id=str(user_id) if user_id else None,
            route=request.url.path,
            method=request.method,
        )

    @staticmethod
    def _endpoint(request: Request) -> str:
        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)
