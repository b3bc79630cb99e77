"""Periodic housekeeping: retention pruning and lapsed subscription expiry."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

import config
from database import utcnow
from models.abuse import DeviceCreationLimit, RiskEvent
from models.billing import Subscription, SubscriptionStatus


logger = logging.getLogger(__name__)


class MaintenanceService:
    """Housekeeping jobs. Each job commits its own work."""

    def __init__(self, db: Session):
        self.db = db

    def cleanup_rate_limit_windows(
        self,
        retention_days: int = config.RATE_LIMIT_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete counter windows that started before the retention cutoff."""
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        deleted = (
            self.db.query(DeviceCreationLimit)
            .filter(DeviceCreationLimit.window_start < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("pruned rate limit windows", extra={"deleted": deleted})
        return deleted

    def prune_risk_events(
        self,
        retention_days: int = config.RISK_EVENT_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> int:
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        deleted = (
            self.db.query(RiskEvent)
            .filter(RiskEvent.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("pruned risk events", extra={"deleted": deleted})
        return deleted

    def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> int:
        """Mark active subscriptions whose billing period has ended as expired."""
        now = now or utcnow()
        expired = (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end.isnot(None),
                Subscription.current_period_end < now,
            )
            .update(
                {Subscription.status: SubscriptionStatus.EXPIRED, Subscription.updated_at: now},
                synchronize_session=False,
            )
        )
        self.db.commit()
        if expired:
            logger.info("expired lapsed subscriptions", extra={"expired": expired})
        return expired

    def expiring_soon(self, days_ahead: int = 7, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or utcnow()
        return (
            self.db.query(Subscription)
            .options(joinedload(Subscription.user))
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end.between(now, now + timedelta(days=days_ahead)),
            )
            .order_by(Subscription.current_period_end)
            .all()
        )

    def run_all(
        self,
        rate_limit_retention_days: int = config.RATE_LIMIT_RETENTION_DAYS,
        risk_event_retention_days: int = config.RISK_EVENT_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or utcnow()
        return {
            "rate_limit_windows_deleted": self.cleanup_rate_limit_windows(
                rate_limit_retention_days, now=now
            ),
            "risk_events_deleted": self.prune_risk_events(risk_event_retention_days, now=now),
            "subscriptions_expired": self.expire_lapsed_subscriptions(now=now),
            "timestamp": now.isoformat(),
        }
