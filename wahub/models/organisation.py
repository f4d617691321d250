"""
Organisation model.

Represents a tenant organisation in the multi-tenant system.
"""
from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from wahub.models.base import Base, TimestampMixin, generate_uuid


class Organisation(Base, TimestampMixin):
    """
    Organisation model representing a tenant in the system.

    Rate ceiling columns override the global defaults for every WhatsApp
    client of the organisation when set.
    """
    __tablename__ = "organisations"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    rate_limit_per_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_per_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Relationships
    webhook_subscriptions = relationship(
        "WebhookSubscription",
        back_populates="organisation",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Organisation(id={self.id}, name={self.name}, domain={self.domain})>"
