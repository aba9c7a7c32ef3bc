"""
Webhook registry service.

Create, update, pause/resume, delete and look up webhook registrations.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import secrets
from typing import Any

import httpx
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alumni_hooks.config import settings
from alumni_hooks.context import RequestContext
from alumni_hooks.errors import AuthorizationError, NotFoundError, ValidationError
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.webhook import Webhook, WebhookStatus
from alumni_hooks.services.event_catalog import unknown_events


_url_adapter = TypeAdapter(HttpUrl)

UPDATABLE_FIELDS = (
    "url",
    "events",
    "secret",
    "name",
    "description",
    "headers",
    "timeout_seconds",
    "max_attempts",
)


def check_url_format(url: str) -> str | None:
    """Return an error message if ``url`` is not an acceptable webhook endpoint."""
    try:
        parsed = _url_adapter.validate_python(url)
    except PydanticValidationError:
        return "Invalid URL format"
    if parsed.scheme != "https" and not settings.WEBHOOK_ALLOW_INSECURE_URLS:
        return "Webhook URL must use HTTPS"
    return None


def normalize_events(events: list[str] | None) -> list[str]:
    """
    Validate and normalize an event subscription list.

    Returns a sorted, de-duplicated list. Raises ValidationError if the
    list is empty or names events outside the catalog.
    """
    cleaned = sorted({e.strip() for e in (events or []) if e and e.strip()})
    if not cleaned:
        raise ValidationError("At least one event is required")
    unknown = unknown_events(cleaned)
    if unknown:
        raise ValidationError(f"Unknown events: {', '.join(unknown)}")
    return cleaned


def generate_secret() -> str:
    """32 url-safe characters."""
    return secrets.token_urlsafe(24)


class WebhookRegistry:
    """Service for managing webhook registrations."""

    def __init__(self, db: AsyncSession, http_client: httpx.AsyncClient | None = None):
        self.db = db
        self.http_client = http_client

    async def create(
        self,
        ctx: RequestContext,
        url: str,
        events: list[str],
        secret: str | None = None,
        name: str | None = None,
        description: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: int | None = None,
        max_attempts: int | None = None,
    ) -> Webhook:
        """
        Register a new webhook for the caller.

        Args:
            ctx: Caller context (owner and tenant)
            url: HTTPS endpoint to POST events to
            events: Event names from the catalog
            secret: Signing secret; generated when omitted

        Returns:
            Newly created Webhook in ACTIVE status

        Raises:
            ValidationError: if any input is malformed (nothing is persisted)
        """
        url = (url or "").strip()
        error = check_url_format(url)
        if error:
            raise ValidationError(f"Invalid webhook URL: {error}")

        webhook = Webhook(
            tenant_id=ctx.tenant_id,
            owner_id=ctx.user_id,
            url=url,
            events=normalize_events(events),
            secret=secret or generate_secret(),
            status=WebhookStatus.ACTIVE,
            name=name,
            description=description,
            headers=dict(headers or {}),
            timeout_seconds=self._check_timeout(timeout_seconds),
            max_attempts=self._check_max_attempts(max_attempts),
        )
        self.db.add(webhook)
        await self.db.commit()
        await self.db.refresh(webhook)

        get_logger(tenant_id=ctx.tenant_id, user_id=ctx.user_id).info(
            "webhook_created",
            webhook_id=webhook.id,
            url=webhook.url,
            events=webhook.events,
        )
        return webhook

    async def update(self, ctx: RequestContext, webhook_id: str, patch: dict[str, Any]) -> Webhook:
        """Apply a partial update. Keys outside UPDATABLE_FIELDS are ignored."""
        webhook = await self.get(ctx, webhook_id)
        changes = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}

        if "url" in changes:
            url = (changes["url"] or "").strip()
            error = check_url_format(url)
            if error:
                raise ValidationError(f"Invalid webhook URL: {error}")
            changes["url"] = url
        if "events" in changes:
            changes["events"] = normalize_events(changes["events"])
        if "timeout_seconds" in changes:
            changes["timeout_seconds"] = self._check_timeout(changes["timeout_seconds"])
        if "max_attempts" in changes:
            changes["max_attempts"] = self._check_max_attempts(changes["max_attempts"])
        if "secret" in changes and not changes["secret"]:
            raise ValidationError("Secret cannot be empty")
        if "headers" in changes:
            changes["headers"] = dict(changes["headers"] or {})

        for field, value in changes.items():
            setattr(webhook, field, value)
        await self.db.commit()
        await self.db.refresh(webhook)

        get_logger(tenant_id=ctx.tenant_id, user_id=ctx.user_id).info(
            "webhook_updated",
            webhook_id=webhook.id,
            fields=sorted(changes),
        )
        return webhook

    async def pause(self, ctx: RequestContext, webhook_id: str) -> Webhook:
        """Stop new dispatches to the webhook. Idempotent."""
        return await self._set_status(ctx, webhook_id, WebhookStatus.PAUSED)

    async def resume(self, ctx: RequestContext, webhook_id: str) -> Webhook:
        """Re-enable dispatches to the webhook. Idempotent."""
        return await self._set_status(ctx, webhook_id, WebhookStatus.ACTIVE)

    async def delete(self, ctx: RequestContext, webhook_id: str) -> None:
        """Remove the registration. Delivery rows are retained for audit."""
        webhook = await self.get(ctx, webhook_id)
        await self.db.delete(webhook)
        await self.db.commit()

        get_logger(tenant_id=ctx.tenant_id, user_id=ctx.user_id).info(
            "webhook_deleted",
            webhook_id=webhook_id,
        )

    async def get(self, ctx: RequestContext, webhook_id: str) -> Webhook:
        """
        Get a webhook the caller may act on.

        Raises:
            NotFoundError: not in the caller's tenant
            AuthorizationError: owned by another user and caller is not admin
        """
        stmt = select(Webhook).where(
            Webhook.id == webhook_id,
            Webhook.tenant_id == ctx.tenant_id
        )
        result = await self.db.execute(stmt)
        webhook = result.scalar_one_or_none()

        if not webhook:
            raise NotFoundError("Webhook not found")
        if webhook.owner_id != ctx.user_id and not ctx.is_admin:
            raise AuthorizationError("You do not have access to this webhook")
        return webhook

    async def list_webhooks(
        self,
        ctx: RequestContext,
        status: str | None = None,
        event: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[Webhook], int]:
        """
        List webhooks visible to the caller, newest first.

        Admins see the whole tenant, members only their own webhooks.
        Unknown status values yield an empty page.
        """
        stmt = select(Webhook).where(Webhook.tenant_id == ctx.tenant_id)
        if not ctx.is_admin:
            stmt = stmt.where(Webhook.owner_id == ctx.user_id)
        if status:
            try:
                stmt = stmt.where(Webhook.status == WebhookStatus(status))
            except ValueError:
                return [], 0
        stmt = stmt.order_by(Webhook.created_at.desc(), Webhook.id)
        offset = (page - 1) * per_page

        if not event:
            count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
            total = (await self.db.execute(count_stmt)).scalar_one()
            result = await self.db.execute(stmt.offset(offset).limit(per_page))
            return list(result.scalars().all()), total

        # events is a JSON column; filtered here to stay portable across backends
        result = await self.db.execute(stmt)
        webhooks = [w for w in result.scalars().all() if w.subscribes_to(event)]
        return webhooks[offset:offset + per_page], len(webhooks)

    async def validate_url(self, url: str, probe: bool = True) -> dict[str, Any]:
        """
        Check a candidate webhook URL.

        Format errors return ``valid: False``. When ``probe`` is set the URL
        is sent a HEAD request; network failures are reported as
        ``reachable: False`` instead of raising.
        """
        error = check_url_format((url or "").strip())
        if error:
            return {"valid": False, "error": error}
        if not probe:
            return {"valid": True}

        try:
            if self.http_client is not None:
                response = await self.http_client.head(url, timeout=10.0)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.head(url)
        except httpx.HTTPError as e:
            return {"valid": True, "reachable": False, "error": str(e) or type(e).__name__}

        return {
            "valid": True,
            "reachable": response.status_code < 500,
            "status_code": response.status_code,
        }

    async def _set_status(self, ctx: RequestContext, webhook_id: str, status: WebhookStatus) -> Webhook:
        webhook = await self.get(ctx, webhook_id)
        if webhook.status == status:
            return webhook

        webhook.status = status
        await self.db.commit()
        await self.db.refresh(webhook)

        get_logger(tenant_id=ctx.tenant_id, user_id=ctx.user_id).info(
            "webhook_status_changed",
            webhook_id=webhook.id,
            status=status.value,
        )
        return webhook

    @staticmethod
    def _check_timeout(value: int | None) -> int:
        if value is None:
            return settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS
        if not 1 <= value <= settings.WEBHOOK_MAX_TIMEOUT_SECONDS:
            raise ValidationError(
                f"timeout_seconds must be between 1 and {settings.WEBHOOK_MAX_TIMEOUT_SECONDS}"
            )
        return value

    @staticmethod
    def _check_max_attempts(value: int | None) -> int:
        if value is None:
            return settings.WEBHOOK_DEFAULT_MAX_ATTEMPTS
        if not 1 <= value <= settings.WEBHOOK_MAX_ATTEMPTS_LIMIT:
            raise ValidationError(
                f"max_attempts must be between 1 and {settings.WEBHOOK_MAX_ATTEMPTS_LIMIT}"
            )
        return value
