"""Released client builds and their rollout settings.

Rows are written by the external admin interface; this service only reads
them to answer update checks.
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)

from database import Base, utcnow


class Platform(str, enum.Enum):
    MAC = "mac"
    WINDOWS = "windows"
    LINUX = "linux"


class Arch(str, enum.Enum):
    X64 = "x64"
    ARM64 = "arm64"


class Channel(str, enum.Enum):
    STABLE = "stable"
    BETA = "beta"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AppVersion(Base):
    """One downloadable build for a platform and channel.

    A NULL arch is a universal build. build_number, not the display version,
    decides ordering.
    """

    __tablename__ = "app_versions"
    __table_args__ = (
        CheckConstraint(
            "rollout_percentage >= 0 AND rollout_percentage <= 100",
            name="ck_app_versions_rollout_percentage",
        ),
        Index("ix_app_versions_lookup", "platform", "arch", "channel", "is_active"),
    )

    id = Column(Integer, primary_key=True)
    platform = Column(
        Enum(Platform, name="app_platform", values_callable=_enum_values),
        nullable=False,
    )
    arch = Column(
        Enum(Arch, name="app_arch", values_callable=_enum_values),
        nullable=True,
    )
    version = Column(String(50), nullable=False)
    build_number = Column(Integer, nullable=False, index=True)
    release_notes = Column(Text, nullable=True)
    download_url = Column(String(500), nullable=False)
    is_mandatory = Column(Boolean, default=False, nullable=False)
    # Kill switch: inactive builds are never offered
    is_active = Column(Boolean, default=True, nullable=False)
    rollout_percentage = Column(Integer, default=100, nullable=False)
    min_supported_build = Column(Integer, nullable=True)
    channel = Column(
        Enum(Channel, name="app_channel", values_callable=_enum_values),
        default=Channel.STABLE,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
