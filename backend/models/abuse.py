"""Abuse mitigation tables: device-creation windows and risk events."""

import enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from database import Base, utcnow


class IdentifierType(str, enum.Enum):
    IP = "ip"
    USER = "user"


class RiskEventType(str, enum.Enum):
    DEVICE_CAP_EXCEEDED = "DEVICE_CAP_EXCEEDED"
    DEVICE_CREATION_RATE_LIMIT = "DEVICE_CREATION_RATE_LIMIT"
    DEVICE_CHURN_DETECTED = "DEVICE_CHURN_DETECTED"
    RAPID_DEVICE_CREATION = "RAPID_DEVICE_CREATION"
    RECONCILIATION_PERFORMED = "RECONCILIATION_PERFORMED"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class DeviceCreationLimit(Base):
    """Device-creation counter for one identifier in one 24h window."""

    __tablename__ = "device_creation_limits"
    __table_args__ = (
        UniqueConstraint(
            "identifier",
            "identifier_type",
            "window_start",
            name="uq_device_creation_limits_window",
        ),
    )

    id = Column(Integer, primary_key=True)
    identifier = Column(String(255), nullable=False)
    identifier_type = Column(
        Enum(IdentifierType, name="identifier_type", values_callable=_enum_values),
        nullable=False,
    )
    window_start = Column(DateTime, nullable=False, index=True)
    device_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class RiskEvent(Base):
    """Append-only audit record of an abuse-relevant event."""

    __tablename__ = "risk_events"
    __table_args__ = (
        Index("ix_risk_events_type_created", "event_type", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    device_id = Column(
        Integer,
        ForeignKey("devices.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    ip_address = Column(String(45), nullable=True, index=True)
    event_type = Column(
        Enum(RiskEventType, name="risk_event_type", values_callable=_enum_values),
        nullable=False,
    )
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
