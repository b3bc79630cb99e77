"""Plans, subscriptions and the webhook idempotency ledger."""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from database import Base, utcnow


class PlanName(str, enum.Enum):
    TRIAL = "trial"
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Plan(Base):
    """Feature bundle reference data, seeded from the plan catalog."""

    __tablename__ = "plans"

    id = Column(Integer, primary_key=True)
    name = Column(
        Enum(PlanName, name="plan_name", values_callable=_enum_values),
        unique=True,
        nullable=False,
    )
    max_cameras = Column(Integer, default=1, nullable=False)
    pdf_export = Column(Boolean, default=False, nullable=False)
    fps_limit = Column(Integer, default=30, nullable=False)
    cloud_backup = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Subscription(Base):
    """Paid subscription mirrored from the billing provider."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Integer,
        ForeignKey("plans.id", ondelete="SET NULL"),
        nullable=True,
    )
    external_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    external_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    status = Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        default=SubscriptionStatus.TRIAL,
        nullable=False,
    )
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    user = relationship("User", backref="subscriptions")
    plan = relationship("Plan")


class WebhookEvent(Base):
    """One row per external event id that has been applied."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
