"""Risk event recorder: append-only audit log for abuse detection."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import utcnow
from models.abuse import RiskEvent, RiskEventType


logger = logging.getLogger(__name__)


class RiskEventRecorder:
    """Writes and summarizes risk events. Recording never blocks anything.

    `record()` adds the row to the current transaction; the caller owns the
    commit boundary.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: RiskEventType,
        *,
        user_id: Optional[int] = None,
        device_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RiskEvent:
        event = RiskEvent(
            user_id=user_id,
            device_id=device_id,
            ip_address=ip_address,
            event_type=RiskEventType(event_type),
            event_metadata=metadata or None,
        )
        self.db.add(event)
        self.db.flush()

        logger.warning(
            "risk_event: %s",
            event.event_type.value,
            extra={
                "risk_event_id": event.id,
                "user_id": user_id,
                "device_id": device_id,
                "ip_address": ip_address,
            },
        )
        return event

    def list_events(
        self,
        *,
        event_type: Optional[RiskEventType] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[RiskEvent]:
        query = self.db.query(RiskEvent)
        if event_type is not None:
            query = query.filter(RiskEvent.event_type == event_type)
        if user_id is not None:
            query = query.filter(RiskEvent.user_id == user_id)
        return query.order_by(RiskEvent.created_at.desc(), RiskEvent.id.desc()).limit(limit).all()

    def summarize(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        top: int = 10,
    ) -> dict:
        """Counts by event type and the noisiest IPs in [start, end].

        Defaults to the last 7 days.
        """
        end = end or utcnow()
        start = start or end - timedelta(days=7)
        in_range = (RiskEvent.created_at >= start, RiskEvent.created_at <= end)

        total = self.db.query(func.count(RiskEvent.id)).filter(*in_range).scalar() or 0

        by_type = {
            event_type.value: count
            for event_type, count in (
                self.db.query(RiskEvent.event_type, func.count(RiskEvent.id))
                .filter(*in_range)
                .group_by(RiskEvent.event_type)
                .all()
            )
        }

        ip_count = func.count(RiskEvent.id).label("count")
        top_ips = [
            {"ip_address": ip, "count": count}
            for ip, count in (
                self.db.query(RiskEvent.ip_address, ip_count)
                .filter(*in_range, RiskEvent.ip_address.isnot(None))
                .group_by(RiskEvent.ip_address)
                .order_by(ip_count.desc())
                .limit(top)
                .all()
            )
        ]

        return {
            "start": start,
            "end": end,
            "total": total,
            "by_type": by_type,
            "top_ips": top_ips,
        }
