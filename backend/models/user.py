"""Account records, identified by email."""

from sqlalchemy import Column, DateTime, Integer, String

from database import Base, utcnow


class User(Base):
    """An account that has registered one or more devices."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    # Per-user device cap override; NULL means the system default applies
    max_devices = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
