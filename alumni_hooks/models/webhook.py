"""
Webhook model.

Registered external endpoints subscribed to platform events.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.
"""
import uuid
import enum
from sqlalchemy import String, Text, Integer, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from alumni_hooks.models.base import Base, TimestampMixin, enum_values


class WebhookStatus(str, enum.Enum):
    """Webhook status enum."""
    ACTIVE = "active"
    PAUSED = "paused"


class Webhook(Base, TimestampMixin):
    """
    Webhook registration.

    Deleting a webhook only removes this row; its deliveries are kept for audit.
    """
    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[WebhookStatus] = mapped_column(
        SQLEnum(WebhookStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=WebhookStatus.ACTIVE
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    @property
    def is_active(self) -> bool:
        return self.status == WebhookStatus.ACTIVE

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])

    def __repr__(self):
        return f"<Webhook(id={self.id}, url={self.url}, status={self.status})>"
