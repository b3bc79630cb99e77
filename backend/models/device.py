"""Device fingerprints, their one-time trial, and user associations."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base, utcnow


class Device(Base):
    """Represents one observed device fingerprint and its trial state.

    Trial fields are written exactly once by the trial service:
    `trial_consumed` only ever goes false -> true and `trial_started_at`
    never changes after it is first set.
    """

    __tablename__ = "devices"
    __table_args__ = (
        CheckConstraint(
            "(trial_started_at IS NULL AND trial_ended_at IS NULL) OR "
            "(trial_started_at IS NOT NULL AND trial_ended_at IS NOT NULL)",
            name="ck_devices_trial_dates_consistent",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    device_hash = Column(String(255), unique=True, nullable=False, index=True)
    first_seen_at = Column(DateTime, default=utcnow, nullable=False)
    trial_started_at = Column(DateTime, nullable=True)
    trial_ended_at = Column(DateTime, nullable=True)
    trial_consumed = Column(Boolean, default=False, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    device_users = relationship("DeviceUser", back_populates="device")


class DeviceUser(Base):
    """A user has registered a device. One row per (user, device) pair."""

    __tablename__ = "device_users"
    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_device_users_user_device"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id = Column(
        Integer,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    user = relationship("User", backref="device_links")
    device = relationship("Device", back_populates="device_users")
