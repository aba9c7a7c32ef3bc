"""
Shared fixtures.

Tests run against an in-memory SQLite database (aiosqlite), a scripted
receiver behind httpx.MockTransport and a queue that only records what was
enqueued. No PostgreSQL, Redis or network is needed.
"""
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DELIVERY_QUEUE_BACKEND"] = "local"
os.environ["SENTRY_DSN"] = ""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from alumni_hooks.context import RequestContext
from alumni_hooks.models.base import Base
from alumni_hooks.models.delivery import WebhookDelivery
from alumni_hooks.models.webhook import Webhook  # noqa: F401
from alumni_hooks.services.jwt_service import JWTService


TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


class Receiver:
    """
    Stand-in webhook endpoint.

    Records every request. Answers with scripted outcomes in order, then
    ``default``. An outcome is a status code or an httpx exception class.
    """

    def __init__(self, default: int = 200):
        self.default = default
        self.outcomes: list = []
        self.requests: list[httpx.Request] = []

    def script(self, *outcomes):
        self.outcomes.extend(outcomes)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("Connection refused", request=request)
        body = "ok" if outcome < 400 else "receiver error"
        return httpx.Response(outcome, text=body)


class RecordingQueue:
    """DeliveryQueue that remembers enqueues instead of running them."""

    def __init__(self):
        self.items: list[dict] = []

    async def enqueue(self, delivery_id, attempt=0, delay=None, dedupe=True):
        self.items.append({
            "delivery_id": delivery_id,
            "attempt": attempt,
            "delay": delay,
            "dedupe": dedupe,
        })

    @property
    def ids(self) -> list[str]:
        return [item["delivery_id"] for item in self.items]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def receiver():
    return Receiver()


@pytest_asyncio.fixture
async def http_client(receiver):
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def owner_ctx():
    return RequestContext(user_id="user-1", tenant_id=TENANT_A, role="member")


@pytest.fixture
def teammate_ctx():
    return RequestContext(user_id="user-2", tenant_id=TENANT_A, role="member")


@pytest.fixture
def admin_ctx():
    return RequestContext(user_id="admin-1", tenant_id=TENANT_A, role="admin")


@pytest.fixture
def outsider_ctx():
    return RequestContext(user_id="user-9", tenant_id=TENANT_B, role="admin")


async def load_delivery(session_factory, delivery_id: str) -> WebhookDelivery:
    """Read a delivery back through a fresh session."""
    async with session_factory() as session:
        return await session.get(WebhookDelivery, delivery_id)


def auth_headers(ctx: RequestContext) -> dict[str, str]:
    token = JWTService().create_token(
        user_id=ctx.user_id,
        org_id=ctx.tenant_id,
        role=ctx.role,
        email=f"{ctx.user_id}@alumni.example",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api(session_factory, http_client, queue):
    """AsyncClient wired to the app with test database, receiver and queue."""
    from alumni_hooks.database import get_db
    from alumni_hooks.dependencies.services import get_delivery_queue, get_http_client
    from alumni_hooks.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_delivery_queue] = lambda: queue

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
