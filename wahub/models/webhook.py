"""
Webhook models.

SECURITY: All queries MUST include organisation_id filter.
Failure to do so will result in data leakage between tenants.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from wahub.models.base import Base, TimestampMixin, enum_values, generate_uuid


class DeliveryOutcome(str, enum.Enum):
    """Terminal outcome of a delivery saga."""
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEvent(str, enum.Enum):
    """Event types a subscription can listen to."""
    MESSAGE_SENT = "message.sent"
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_FAILED = "message.failed"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_READ = "message.read"
    CLIENT_CONNECTED = "client.connected"
    CLIENT_DISCONNECTED = "client.disconnected"
    CAMPAIGN_STARTED = "campaign.started"
    CAMPAIGN_COMPLETED = "campaign.completed"
    AUTOMATION_TRIGGERED = "automation.triggered"
    CONTACT_ADDED = "contact.added"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_REMOVED = "contact.removed"


EVENT_TYPES = frozenset(event.value for event in WebhookEvent)


@dataclass(frozen=True)
class SubscriptionTarget:
    """Immutable snapshot of a subscription, taken when an event fans out."""
    id: str
    organisation_id: str
    url: str
    secret: str
    headers: dict = field(default_factory=dict)

    def __repr__(self):
        # never render the secret
        return f"SubscriptionTarget(id={self.id!r}, url={self.url!r})"


class WebhookSubscription(Base, TimestampMixin):
    """
    A registered (organisation, URL, event set, secret) tuple.

    The secret is written once at registration and never updated;
    rotating it means registering a replacement subscription.
    """
    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    organisation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    headers: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    deactivated_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Relationships
    organisation = relationship("Organisation", back_populates="webhook_subscriptions")
    delivery_logs = relationship(
        "WebhookDeliveryLog",
        back_populates="subscription",
        cascade="all, delete-orphan"
    )

    def subscribes_to(self, event_type: str) -> bool:
        return self.active and event_type in (self.events or [])

    def to_target(self) -> SubscriptionTarget:
        return SubscriptionTarget(
            id=self.id,
            organisation_id=self.organisation_id,
            url=self.url,
            secret=self.secret,
            headers=dict(self.headers or {}),
        )

    def __repr__(self):
        return f"<WebhookSubscription(id={self.id}, org_id={self.organisation_id}, url={self.url})>"


class WebhookDeliveryLog(Base):
    """
    Append-only terminal record of a delivery saga.

    One row per (subscription, triggered event); delivery_id is unique so a
    replayed terminal write cannot produce a duplicate.
    """
    __tablename__ = "webhook_delivery_logs"
    __table_args__ = (
        # failure sweep: failed logs per subscription inside a time window
        Index("ix_webhook_delivery_logs_sweep", "subscription_id", "outcome", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    delivery_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    subscription_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    organisation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    outcome: Mapped[DeliveryOutcome] = mapped_column(
        SQLEnum(DeliveryOutcome, native_enum=False, values_callable=enum_values),
        nullable=False
    )
    # None means no HTTP response (timeout, connection error, signing failure)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attempt_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )

    # Relationships
    subscription = relationship("WebhookSubscription", back_populates="delivery_logs")

    def __repr__(self):
        return (
            f"<WebhookDeliveryLog(id={self.id}, subscription_id={self.subscription_id}, "
            f"outcome={self.outcome}, attempts={self.attempt_count})>"
        )
