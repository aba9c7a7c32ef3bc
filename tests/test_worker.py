"""
ARQ worker job tests.

Jobs are called directly with a hand-built ctx; no Redis is involved.
"""
import pytest

from conftest import load_delivery
from alumni_hooks.services.dispatcher import DeliveryDispatcher
from alumni_hooks.services.registry import WebhookRegistry
from alumni_hooks.worker import WorkerSettings, deliver_webhook, requeue_stale_deliveries


@pytest.fixture
def worker_ctx(session_factory, http_client, queue):
    return {
        "session_factory": session_factory,
        "http_client": http_client,
        "queue": queue,
        "job_try": 1,
    }


class TestWorker:
    async def test_deliver_webhook_job(self, worker_ctx, session_factory, queue, owner_ctx):
        async with session_factory() as session:
            await WebhookRegistry(session).create(
                owner_ctx, url="https://hooks.example.com/a", events=["user.created"]
            )
            [delivery] = await DeliveryDispatcher(session, queue).dispatch(
                owner_ctx.tenant_id, "user.created", {"user_id": 5}
            )

        status = await deliver_webhook(worker_ctx, delivery.id)

        assert status == "success"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.attempt_count == 1

    async def test_stale_cron_with_nothing_stale(self, worker_ctx):
        assert await requeue_stale_deliveries(worker_ctx) == 0

    def test_settings(self):
        assert [f.__name__ for f in WorkerSettings.functions] == ["deliver_webhook"]
        assert len(WorkerSettings.cron_jobs) == 1
