from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config import DATABASE_URL


def sqlite_connect_args(url: str) -> dict:
    """Connection arguments needed when the URL points at SQLite."""
    if not url.startswith("sqlite"):
        return {}
    return {
        "check_same_thread": False,  # Required for SQLite with FastAPI
        "timeout": 30,  # Wait for competing writers instead of failing fast
    }


engine = create_engine(
    DATABASE_URL,
    connect_args=sqlite_connect_args(DATABASE_URL),
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Dependency for getting database sessions in FastAPI routes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_sqlite_session(session: Session) -> bool:
    """Return True when the session is bound to a SQLite database.

    Works for sessions bound to an Engine as well as to a Connection
    (a Connection has no `.url`, but both expose `.dialect`).
    """
    bind = session.get_bind()
    return bind.dialect.name == "sqlite"


def dialect_insert(session: Session, model):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect."""
    if is_sqlite_session(session):
        return sqlite_insert(model)
    return pg_insert(model)


def init_db():
    """Initialize the database, create all tables and seed plan reference data."""
    # Import models here to ensure they're registered with Base
    from models import (  # noqa: F401
        AppVersion,
        Device,
        DeviceCreationLimit,
        DeviceUser,
        Plan,
        RiskEvent,
        Subscription,
        User,
        WebhookEvent,
    )
    from services.plans import seed_plans

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_plans(db)
        db.commit()
    finally:
        db.close()
