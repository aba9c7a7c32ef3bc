"""
alumni-hooks - Webhook delivery service for the alumni platform

FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager, suppress

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import observability modules
from alumni_hooks.config import settings
from alumni_hooks.logging_config import configure_logging, get_logger
from alumni_hooks.sentry_config import configure_sentry
from alumni_hooks.middleware.logging import LoggingMiddleware
from alumni_hooks.routes.metrics import router as metrics_router

from alumni_hooks.database import AsyncSessionLocal, get_db
from alumni_hooks.errors import WebhookServiceError
from alumni_hooks.models.base import utcnow
from alumni_hooks.services.delivery_queue import ArqDeliveryQueue, LocalDeliveryQueue
from alumni_hooks.services.pipeline import process_delivery, requeue_stale

# Import route modules
from alumni_hooks.routes.webhooks import router as webhooks_router
from alumni_hooks.routes.events import router as events_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="app")

STALE_SWEEP_INTERVAL_SECONDS = 300


async def sweep_stale_deliveries(queue: LocalDeliveryQueue):
    """Periodic stale-delivery sweep for the in-process backend."""
    while True:
        await asyncio.sleep(STALE_SWEEP_INTERVAL_SECONDS)
        try:
            await requeue_stale(AsyncSessionLocal, queue, utcnow())
        except Exception:
            logger.exception("stale_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    http_client = httpx.AsyncClient(follow_redirects=False)
    sweeper = None

    if settings.DELIVERY_QUEUE_BACKEND == "local":
        queue = LocalDeliveryQueue()

        async def handle(delivery_id: str):
            return await process_delivery(delivery_id, AsyncSessionLocal, http_client, queue)

        queue.start(handle)
        sweeper = asyncio.create_task(sweep_stale_deliveries(queue))
    else:
        queue = ArqDeliveryQueue()

    app.state.http_client = http_client
    app.state.delivery_queue = queue
    logger.info("application_started", queue_backend=settings.DELIVERY_QUEUE_BACKEND)

    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        if isinstance(queue, LocalDeliveryQueue):
            await queue.stop()
        else:
            await queue.close()
        await http_client.aclose()
        logger.info("application_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Webhook registration, signed event delivery and retry service",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WebhookServiceError)
async def service_error_handler(request: Request, exc: WebhookServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": "; ".join(problems)},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(webhooks_router)
app.include_router(events_router)


@app.get("/")
async def root():
    """Service banner."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(db: AsyncSession = Depends(get_db)):
    """Health check with a database round trip."""
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning("health_database_unavailable", error=str(e))
        database = "unavailable"
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "queue_backend": settings.DELIVERY_QUEUE_BACKEND,
    }
