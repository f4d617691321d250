"""
Ban alert model.

Records suspicious-activity signals raised by the admission gate and
transport-level warnings (authentication failures) per WhatsApp client.
"""
import enum
from sqlalchemy import JSON, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from wahub.models.base import Base, TimestampMixin, enum_values, generate_uuid


class AlertType(str, enum.Enum):
    """Ban alert type enum."""
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    PROTECTIVE_MEASURES_ACTIVATED = "protective_measures_activated"
    AUTH_FAILURE = "auth_failure"


class AlertStatus(str, enum.Enum):
    """Ban alert status enum."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class BanAlert(Base, TimestampMixin):
    """Ban alert raised for a WhatsApp client."""
    __tablename__ = "ban_alerts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    organisation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    client_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    alert_type: Mapped[AlertType] = mapped_column(
        SQLEnum(AlertType, native_enum=False, values_callable=enum_values),
        nullable=False
    )
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[AlertStatus] = mapped_column(
        SQLEnum(AlertStatus, native_enum=False, values_callable=enum_values),
        nullable=False,
        default=AlertStatus.OPEN
    )

    def __repr__(self):
        return f"<BanAlert(id={self.id}, client_id={self.client_id}, type={self.alert_type})>"
