"""Concurrent trial starts, registrations and webhook deliveries against a real database.

Every worker uses its own session, like concurrent API requests do.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func
from sqlalchemy.orm import Session

from models.abuse import RiskEvent, RiskEventType
from models.billing import Subscription, SubscriptionStatus, WebhookEvent
from models.device import Device, DeviceUser
from models.user import User
from services.abuse_policy import AbusePolicy, EnforcementMode
from services.exceptions import RateLimitExceededError
from services.license_service import LicenseService
from services.subscription_reconciler import (
    ACK_DUPLICATE,
    ACK_PROCESSED,
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    SubscriptionReconciler,
)
from services.trial_service import TRIAL_DURATION, TrialService
from tests.fixtures.test_data import (
    DEVICE_HASH,
    TEST_EMAIL,
    checkout_session,
    device_hash,
    stripe_subscription,
)


WORKERS = 10
NOW = datetime(2026, 3, 10, 12, 0, 0)


def _run_concurrently(task, workers=WORKERS):
    barrier = threading.Barrier(workers)

    def worker(n):
        barrier.wait()
        return task(n)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(worker, range(workers)))


@pytest.mark.integration
class TestConcurrentTrialStart:

    def test_exactly_one_caller_starts_the_trial(
        self, db_session: Session, session_factory, make_device
    ):
        device_id = make_device().id

        def start(n):
            session = session_factory()
            try:
                device = session.get(Device, device_id)
                window = TrialService(session).start_trial_if_eligible(
                    device, now=NOW + timedelta(seconds=n)
                )
                session.commit()
                return window
            finally:
                session.close()

        windows = _run_concurrently(start)

        assert sum(1 for w in windows if w.newly_started) == 1
        assert len({(w.started_at, w.ended_at) for w in windows}) == 1

        device = db_session.get(Device, device_id)
        assert device.trial_consumed is True
        assert device.trial_ended_at - device.trial_started_at == TRIAL_DURATION


@pytest.mark.integration
class TestConcurrentRegistration:

    def test_parallel_identical_registrations(self, db_session: Session, session_factory):
        policy = AbusePolicy()

        def register(n):
            session = session_factory()
            try:
                return LicenseService(session, policy).register_device_user(
                    TEST_EMAIL, DEVICE_HASH, source_ip="203.0.113.7"
                )
            finally:
                session.close()

        results = _run_concurrently(register)

        assert len({r.device_id for r in results}) == 1
        assert len({r.user_id for r in results}) == 1
        assert len({r.trial_expires_at for r in results}) == 1
        assert sum(1 for r in results if r.new_association) == 1

        assert db_session.query(func.count(Device.id)).scalar() == 1
        assert db_session.query(func.count(User.id)).scalar() == 1
        assert db_session.query(func.count(DeviceUser.id)).scalar() == 1
        device = db_session.query(Device).one()
        assert device.trial_consumed is True
        assert device.trial_started_at is not None

    def test_parallel_registrations_from_one_ip_respect_the_window_limit(
        self, db_session: Session, session_factory
    ):
        policy = AbusePolicy(
            max_devices_per_ip_per_window=5,
            rate_limit_mode=EnforcementMode.BLOCK,
        )

        def register(n):
            session = session_factory()
            try:
                return LicenseService(session, policy).register_device_user(
                    f"user{n}@example.com", device_hash(100 + n), source_ip="198.51.100.20"
                )
            except RateLimitExceededError as exc:
                return exc
            finally:
                session.close()

        results = _run_concurrently(register)

        rejected = [r for r in results if isinstance(r, RateLimitExceededError)]
        assert len(rejected) == WORKERS - 5
        assert db_session.query(func.count(DeviceUser.id)).scalar() == 5
        assert (
            db_session.query(func.count(RiskEvent.id))
            .filter(RiskEvent.event_type == RiskEventType.DEVICE_CREATION_RATE_LIMIT)
            .scalar()
            == WORKERS - 5
        )


@pytest.mark.integration
class TestConcurrentWebhookDelivery:

    def test_parallel_replays_apply_once(self, db_session: Session, session_factory, make_user):
        user_id = make_user().id
        payload = checkout_session(user_id=user_id)

        def deliver(n):
            session = session_factory()
            try:
                return SubscriptionReconciler(session).ingest_billing_event(
                    "evt_replay_1", CHECKOUT_COMPLETED, payload
                )
            finally:
                session.close()

        acks = _run_concurrently(deliver)

        assert [a.status for a in acks].count(ACK_PROCESSED) == 1
        assert [a.status for a in acks].count(ACK_DUPLICATE) == WORKERS - 1
        assert db_session.query(func.count(Subscription.id)).scalar() == 1
        assert db_session.query(func.count(WebhookEvent.id)).scalar() == 1
        assert db_session.query(Subscription).one().status == SubscriptionStatus.ACTIVE

    def test_deletion_racing_a_stale_update_is_never_lost(
        self, db_session: Session, session_factory, make_user, make_subscription
    ):
        make_subscription(make_user(), status=SubscriptionStatus.ACTIVE)
        deliveries = [
            ("evt_deleted_1", SUBSCRIPTION_DELETED, stripe_subscription(status="canceled")),
            ("evt_updated_1", SUBSCRIPTION_UPDATED, stripe_subscription(status="active")),
        ]

        def deliver(n):
            session = session_factory()
            try:
                return SubscriptionReconciler(session).ingest_billing_event(*deliveries[n])
            finally:
                session.close()

        acks = _run_concurrently(deliver, workers=2)

        assert {a.status for a in acks} == {ACK_PROCESSED}
        subscription = db_session.query(Subscription).one()
        regressions = (
            db_session.query(RiskEvent)
            .filter(RiskEvent.event_type == RiskEventType.SUSPICIOUS_PATTERN)
            .all()
        )
        # Either the deletion landed last, or the update reverted it and was flagged
        if subscription.status == SubscriptionStatus.ACTIVE:
            assert [e.event_metadata["reason"] for e in regressions] == ["status_regression"]
        else:
            assert subscription.status == SubscriptionStatus.EXPIRED
            assert regressions == []
