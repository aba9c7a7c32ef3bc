"""
Delivery lifecycle tests.

Covers dispatch fan-out, the executor, retry scheduling, cancellation,
manual redelivery and the stale-delivery sweep. The receiver is a
MockTransport; the queue only records enqueues, and tests drive
process_delivery themselves the way a worker would.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from conftest import load_delivery
from alumni_hooks.errors import ValidationError
from alumni_hooks.models.base import as_utc, utcnow
from alumni_hooks.models.delivery import DeliveryStatus, WebhookDelivery
from alumni_hooks.services.dispatcher import DeliveryDispatcher
from alumni_hooks.services.pipeline import process_delivery, requeue_stale, send_test
from alumni_hooks.services.registry import WebhookRegistry
from alumni_hooks.services.retry import backoff_seconds
from alumni_hooks.services.signature import verify_signature


async def make_webhook(session_factory, ctx, events=("post.created",), **kwargs):
    async with session_factory() as session:
        return await WebhookRegistry(session).create(
            ctx,
            url=kwargs.pop("url", "https://hooks.example.com/alumni"),
            events=list(events),
            **kwargs
        )


async def dispatch(session_factory, queue, tenant_id, event_type="post.created", data=None):
    async with session_factory() as session:
        return await DeliveryDispatcher(session, queue).dispatch(
            tenant_id, event_type, data or {"post_id": 42}
        )


class TestDispatch:
    async def test_fans_out_to_active_subscribers_only(self, session_factory, queue, owner_ctx, outsider_ctx):
        subscribed = await make_webhook(session_factory, owner_ctx, events=["post.created", "post.liked"])
        await make_webhook(session_factory, owner_ctx, events=["user.created"])
        paused = await make_webhook(session_factory, owner_ctx)
        await make_webhook(session_factory, outsider_ctx)
        async with session_factory() as session:
            await WebhookRegistry(session).pause(owner_ctx, paused.id)

        deliveries = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        assert [d.webhook_id for d in deliveries] == [subscribed.id]
        delivery = deliveries[0]
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempt_count == 0
        assert delivery.max_attempts == subscribed.max_attempts
        assert delivery.url == subscribed.url
        assert delivery.payload["event"] == "post.created"
        assert delivery.payload["data"] == {"post_id": 42}
        assert delivery.payload["id"].startswith("evt_")
        assert queue.ids == [delivery.id]

    async def test_unknown_event_rejected(self, session_factory, queue, owner_ctx):
        await make_webhook(session_factory, owner_ctx)

        with pytest.raises(ValidationError):
            await dispatch(session_factory, queue, owner_ctx.tenant_id, event_type="post.exploded")
        assert queue.items == []

    async def test_unencodable_data_rejected(self, session_factory, queue, owner_ctx):
        await make_webhook(session_factory, owner_ctx)

        with pytest.raises(ValidationError, match="UTF-8"):
            await dispatch(session_factory, queue, owner_ctx.tenant_id, data={"title": "\ud800"})
        assert queue.items == []

    async def test_no_subscribers(self, session_factory, queue, owner_ctx):
        deliveries = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        assert deliveries == []
        assert queue.items == []

    async def test_queue_outage_leaves_rows_pending(self, session_factory, owner_ctx):
        class BrokenQueue:
            async def enqueue(self, *args, **kwargs):
                raise ConnectionError("redis down")

        await make_webhook(session_factory, owner_ctx)
        deliveries = await dispatch(session_factory, BrokenQueue(), owner_ctx.tenant_id)

        stored = await load_delivery(session_factory, deliveries[0].id)
        assert stored.status == DeliveryStatus.PENDING


class TestExecution:
    async def test_success(self, session_factory, http_client, queue, receiver, owner_ctx):
        webhook = await make_webhook(session_factory, owner_ctx, headers={"X-Api-Key": "abc"})
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "success"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.attempt_count == 1
        assert stored.response_code == 200
        assert stored.response_body == "ok"
        assert stored.completed_at is not None
        assert stored.error_message is None

        [request] = receiver.requests
        assert request.method == "POST"
        assert request.headers["X-Event-Type"] == "post.created"
        assert request.headers["X-Delivery-ID"] == delivery.id
        assert request.headers["X-Webhook-ID"] == webhook.id
        assert request.headers["User-Agent"] == "AlumniPlatform-Webhook/1.0"
        assert request.headers["X-Api-Key"] == "abc"
        assert verify_signature(request.content, webhook.secret, request.headers["X-Signature"])

    async def test_server_error_schedules_retry(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(500)
        await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        before = utcnow()

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "retrying"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.attempt_count == 1
        assert stored.response_code == 500
        assert stored.error_message == "HTTP 500"
        delay = backoff_seconds(1)
        assert delay == 60.0
        assert before + timedelta(seconds=delay - 1) <= as_utc(stored.next_retry_at)
        assert as_utc(stored.next_retry_at) <= utcnow() + timedelta(seconds=delay)
        assert queue.items[-1] == {
            "delivery_id": delivery.id,
            "attempt": 1,
            "delay": delay,
            "dedupe": True,
        }

    async def test_network_error_schedules_retry(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(httpx.ConnectError)
        await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "retrying"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.response_code is None
        assert "Connection refused" in stored.error_message

    async def test_exhaustion_marks_dead(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.default = 503
        await make_webhook(session_factory, owner_ctx, max_attempts=2)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        assert await process_delivery(delivery.id, session_factory, http_client, queue) == "retrying"
        assert await process_delivery(delivery.id, session_factory, http_client, queue) == "dead"

        stored = await load_delivery(session_factory, delivery.id)
        assert stored.attempt_count == 2
        assert stored.completed_at is not None
        assert stored.next_retry_at is None
        assert "Retry budget exhausted after 2 attempts" in stored.error_message
        assert "HTTP 503" in stored.error_message
        assert len(receiver.requests) == 2

    async def test_retry_then_success(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(500, 200)
        await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        await process_delivery(delivery.id, session_factory, http_client, queue)
        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "success"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.attempt_count == 2
        assert receiver.requests[1].headers["X-Attempt"] == "2"

    async def test_duplicate_message_after_success_is_ignored(self, session_factory, http_client, queue, receiver, owner_ctx):
        await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        await process_delivery(delivery.id, session_factory, http_client, queue)
        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "success"
        assert len(receiver.requests) == 1

    async def test_rotated_secret_used_at_send_time(self, session_factory, http_client, queue, receiver, owner_ctx):
        webhook = await make_webhook(session_factory, owner_ctx, secret="old-secret")
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        async with session_factory() as session:
            await WebhookRegistry(session).update(owner_ctx, webhook.id, {"secret": "new-secret"})

        await process_delivery(delivery.id, session_factory, http_client, queue)

        [request] = receiver.requests
        assert verify_signature(request.content, "new-secret", request.headers["X-Signature"])

    async def test_custom_headers_cannot_shadow_delivery_headers(self, session_factory, http_client, queue, receiver, owner_ctx):
        webhook = await make_webhook(
            session_factory,
            owner_ctx,
            headers={"x-signature": "sha256=forged", "content-type": "text/plain", "x-delivery-id": "fake"},
        )
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        await process_delivery(delivery.id, session_factory, http_client, queue)

        [request] = receiver.requests
        assert len(request.headers.get_list("X-Signature")) == 1
        assert request.headers.get_list("Content-Type") == ["application/json"]
        assert request.headers.get_list("X-Delivery-ID") == [delivery.id]
        assert verify_signature(request.content, webhook.secret, request.headers["X-Signature"])

    async def test_retry_goes_to_updated_url(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(500, 200)
        webhook = await make_webhook(session_factory, owner_ctx, url="https://old.example.com/a")
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        await process_delivery(delivery.id, session_factory, http_client, queue)
        async with session_factory() as session:
            await WebhookRegistry(session).update(owner_ctx, webhook.id, {"url": "https://new.example.com/a"})

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "success"
        assert [str(r.url) for r in receiver.requests] == [
            "https://old.example.com/a",
            "https://new.example.com/a",
        ]
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.url == "https://new.example.com/a"


class TestCancellation:
    async def test_pause_cancels_scheduled_retry(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(500)
        webhook = await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        await process_delivery(delivery.id, session_factory, http_client, queue)
        async with session_factory() as session:
            await WebhookRegistry(session).pause(owner_ctx, webhook.id)

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "dead"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored.error_message == "Retry cancelled: Webhook paused"
        assert len(receiver.requests) == 1

    async def test_delete_cancels_pending_and_keeps_history(self, session_factory, http_client, queue, receiver, owner_ctx):
        webhook = await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        async with session_factory() as session:
            await WebhookRegistry(session).delete(owner_ctx, webhook.id)

        status = await process_delivery(delivery.id, session_factory, http_client, queue)

        assert status == "dead"
        stored = await load_delivery(session_factory, delivery.id)
        assert stored is not None
        assert stored.webhook_id == webhook.id
        assert stored.error_message == "Delivery cancelled: Webhook deleted"
        assert receiver.requests == []

    async def test_missing_delivery(self, session_factory, http_client, queue):
        assert await process_delivery("gone", session_factory, http_client, queue) is None


class TestRedelivery:
    async def test_creates_independent_delivery(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.default = 500
        webhook = await make_webhook(session_factory, owner_ctx, max_attempts=1)
        [original] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        assert await process_delivery(original.id, session_factory, http_client, queue) == "dead"

        async with session_factory() as session:
            retry = await DeliveryDispatcher(session, queue).redeliver(owner_ctx, webhook.id, original.id)

        assert retry.id != original.id
        assert retry.retry_of_id == original.id
        assert retry.status == DeliveryStatus.PENDING
        assert retry.attempt_count == 0
        assert retry.payload == original.payload
        assert queue.ids[-1] == retry.id

        stored = await load_delivery(session_factory, original.id)
        assert stored.status == DeliveryStatus.DEAD
        assert stored.attempt_count == 1

    async def test_in_flight_delivery_rejected(self, session_factory, queue, owner_ctx):
        webhook = await make_webhook(session_factory, owner_ctx)
        [delivery] = await dispatch(session_factory, queue, owner_ctx.tenant_id)

        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await DeliveryDispatcher(session, queue).redeliver(owner_ctx, webhook.id, delivery.id)


class TestTestDelivery:
    async def test_single_attempt_ends_dead_on_failure(self, session_factory, http_client, queue, receiver, owner_ctx):
        receiver.script(404)
        webhook = await make_webhook(session_factory, owner_ctx)

        async with session_factory() as session:
            delivery = await send_test(session, owner_ctx, webhook.id, http_client, queue)

        assert delivery.event_type == "webhook.test"
        assert delivery.status == DeliveryStatus.DEAD
        assert delivery.attempt_count == 1
        assert delivery.response_code == 404
        assert queue.items == []

    async def test_paused_webhook_rejected(self, session_factory, queue, owner_ctx):
        webhook = await make_webhook(session_factory, owner_ctx)
        async with session_factory() as session:
            await WebhookRegistry(session).pause(owner_ctx, webhook.id)
            with pytest.raises(ValidationError):
                await DeliveryDispatcher(session, queue).create_test_delivery(owner_ctx, webhook.id)


class TestStaleSweep:
    async def test_requeues_only_overdue_pending(self, session_factory, queue, owner_ctx):
        await make_webhook(session_factory, owner_ctx)
        [stale] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        [fresh] = await dispatch(session_factory, queue, owner_ctx.tenant_id)
        async with session_factory() as session:
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == stale.id)
                .values(updated_at=utcnow() - timedelta(hours=1))
            )
            await session.commit()
        queue.items.clear()

        count = await requeue_stale(session_factory, queue, utcnow())

        assert count == 1
        assert queue.items == [{"delivery_id": stale.id, "attempt": 0, "delay": None, "dedupe": False}]
        assert fresh.id not in queue.ids
