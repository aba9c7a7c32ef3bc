"""
Webhook Delivery Model

Tracks outbound webhook deliveries and their retry state.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, Text, JSON, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from alumni_hooks.models.base import Base, TimestampMixin, enum_values


class DeliveryStatus(str, enum.Enum):
    """
    Delivery status enum.

    pending -> success | failed; failed -> retrying | dead; retrying -> pending.
    """
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD = "dead"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.DEAD})
SETTLED_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED, DeliveryStatus.DEAD})


class WebhookDelivery(Base, TimestampMixin):
    """
    One event delivery to one webhook, across all of its attempts.

    webhook_id is a plain indexed column (no foreign key) so the row
    outlives the webhook.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_webhook_created", "webhook_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    webhook_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    signature: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True
    )
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_of_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, event={self.event_type}, status={self.status})>"
