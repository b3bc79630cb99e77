"""Tests for risk event recording and summaries."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from models.abuse import RiskEvent, RiskEventType
from services.risk_events import RiskEventRecorder


NOW = datetime(2026, 3, 10, 12, 0, 0)


def _add_event(db_session: Session, event_type: RiskEventType, ip: str = None, created_at=NOW):
    db_session.add(RiskEvent(event_type=event_type, ip_address=ip, created_at=created_at))


@pytest.mark.integration
class TestRiskEventRecorder:

    def test_record_writes_row_in_current_transaction(self, db_session: Session, make_user):
        user = make_user()
        recorder = RiskEventRecorder(db_session)

        event = recorder.record(
            RiskEventType.SUSPICIOUS_PATTERN,
            user_id=user.id,
            ip_address="2001:db8::1",
            metadata={"reason": "manual"},
        )

        # Flushed, so it has an id before the caller commits
        assert event.id is not None
        db_session.commit()

        stored = db_session.get(RiskEvent, event.id)
        assert stored.event_type == RiskEventType.SUSPICIOUS_PATTERN
        assert stored.event_metadata == {"reason": "manual"}
        assert stored.ip_address == "2001:db8::1"

    def test_accepts_string_event_type(self, db_session: Session):
        event = RiskEventRecorder(db_session).record("RAPID_DEVICE_CREATION")

        assert event.event_type == RiskEventType.RAPID_DEVICE_CREATION

    def test_list_events_filters(self, db_session: Session, make_user):
        user = make_user()
        recorder = RiskEventRecorder(db_session)
        recorder.record(RiskEventType.DEVICE_CAP_EXCEEDED, user_id=user.id)
        recorder.record(RiskEventType.DEVICE_CHURN_DETECTED, user_id=user.id)
        recorder.record(RiskEventType.DEVICE_CAP_EXCEEDED)
        db_session.commit()

        assert len(recorder.list_events()) == 3
        assert len(recorder.list_events(event_type=RiskEventType.DEVICE_CAP_EXCEEDED)) == 2
        assert len(recorder.list_events(user_id=user.id)) == 2
        assert len(recorder.list_events(limit=1)) == 1

    def test_summarize_counts_by_type_and_ip(self, db_session: Session):
        _add_event(db_session, RiskEventType.DEVICE_CREATION_RATE_LIMIT, "203.0.113.7")
        _add_event(db_session, RiskEventType.DEVICE_CREATION_RATE_LIMIT, "203.0.113.7")
        _add_event(db_session, RiskEventType.DEVICE_CAP_EXCEEDED, "198.51.100.1")
        _add_event(db_session, RiskEventType.RECONCILIATION_PERFORMED)
        # Outside the range
        _add_event(
            db_session,
            RiskEventType.DEVICE_CAP_EXCEEDED,
            "198.51.100.1",
            created_at=NOW - timedelta(days=30),
        )
        db_session.commit()

        summary = RiskEventRecorder(db_session).summarize(
            start=NOW - timedelta(days=7), end=NOW + timedelta(minutes=1)
        )

        assert summary["total"] == 4
        assert summary["by_type"] == {
            "DEVICE_CREATION_RATE_LIMIT": 2,
            "DEVICE_CAP_EXCEEDED": 1,
            "RECONCILIATION_PERFORMED": 1,
        }
        assert summary["top_ips"][0] == {"ip_address": "203.0.113.7", "count": 2}
        assert len(summary["top_ips"]) == 2
