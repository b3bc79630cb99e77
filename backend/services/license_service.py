"""
License service.

Registers (email, device fingerprint) pairs and answers license status
queries. Registration runs as one transaction: user upsert, device upsert,
association, abuse checks and trial start either all commit or none do.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import dialect_insert, utcnow
from models.abuse import IdentifierType, RiskEventType
from models.billing import Subscription, SubscriptionStatus
from models.device import Device, DeviceUser
from models.user import User
from services.abuse_policy import AbusePolicy
from services.device_cap import DeviceCapEnforcer
from services.entitlements import LicenseSnapshot, evaluate_license, is_subscription_active
from services.exceptions import DeviceNotFoundError, PolicyRejectionError, TrialIntegrityError
from services.rate_limiter import DeviceCreationRateLimiter
from services.risk_events import RiskEventRecorder
from services.trial_service import TrialService


logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class RegistrationResult:
    user_id: int
    device_id: int
    trial_started_at: Optional[datetime]
    trial_expires_at: Optional[datetime]
    license: LicenseSnapshot
    new_association: bool = False


class LicenseService:
    """Registration and license evaluation over one session.

    Unlike the smaller services, this one owns the commit boundary.
    """

    def __init__(self, db: Session, policy: Optional[AbusePolicy] = None):
        self.db = db
        self.policy = policy or AbusePolicy.from_config()
        self.recorder = RiskEventRecorder(db)
        self.trials = TrialService(db)
        self.rate_limiter = DeviceCreationRateLimiter(db, self.policy, self.recorder)
        self.device_cap = DeviceCapEnforcer(db, self.policy, self.recorder)

    # =========================================================================
    # Registration
    # =========================================================================

    def register_device_user(
        self,
        email: str,
        device_hash: str,
        source_ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RegistrationResult:
        """Link a device to a user, starting the device's trial if eligible.

        Re-registering an existing pair is idempotent and does not count
        against rate limits or the device cap.

        Raises:
            DeviceCapExceededError: the user is at their device cap (block mode)
            RateLimitExceededError: too many new devices in the window (block mode)
            TrialIntegrityError: the device row breaks a trial invariant
        """
        email = normalize_email(email)
        now = now or utcnow()

        try:
            user = self._get_or_create_user(email, now)
            device = self._get_or_create_device(device_hash, now)
            link_id = self._link_user_device(user.id, device.id, now)

            if link_id is not None:
                self._apply_abuse_policies(user, device, link_id, source_ip, now)

            trial = self.trials.start_trial_if_eligible(device, now)
            device.last_seen_at = now
            self.db.commit()
        except PolicyRejectionError as exc:
            self.db.rollback()
            self._persist_rejection(exc, email=email, device_hash=device_hash)
            raise
        except TrialIntegrityError as exc:
            self.db.rollback()
            logger.error(
                "trial integrity violation during registration",
                extra={"device_id": exc.device_id, "violation": exc.violation},
            )
            self._record_after_rollback(
                RiskEventType.SUSPICIOUS_PATTERN,
                device_id=exc.device_id,
                ip_address=source_ip,
                metadata={"reason": "trial_integrity_violation", "violation": exc.violation},
            )
            raise
        except Exception:
            self.db.rollback()
            raise

        snapshot = self.evaluate_device(device, now)
        logger.info(
            "device registered",
            extra={
                "user_id": user.id,
                "device_id": device.id,
                "new_association": link_id is not None,
                "license_status": snapshot.status.value,
            },
        )
        return RegistrationResult(
            user_id=user.id,
            device_id=device.id,
            trial_started_at=trial.started_at,
            trial_expires_at=trial.ended_at,
            license=snapshot,
            new_association=link_id is not None,
        )

    def _get_or_create_user(self, email: str, now: datetime) -> User:
        self.db.execute(
            dialect_insert(self.db, User)
            .values(email=email, created_at=now)
            .on_conflict_do_nothing(index_elements=["email"])
        )
        # Serializes cap counting for this user (a no-op on SQLite)
        return (
            self.db.query(User)
            .filter(User.email == email)
            .with_for_update()
            .populate_existing()
            .one()
        )

    def _get_or_create_device(self, device_hash: str, now: datetime) -> Device:
        self.db.execute(
            dialect_insert(self.db, Device)
            .values(
                device_hash=device_hash,
                first_seen_at=now,
                trial_consumed=False,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["device_hash"])
        )
        return (
            self.db.query(Device)
            .filter(Device.device_hash == device_hash)
            .populate_existing()
            .one()
        )

    def _link_user_device(self, user_id: int, device_id: int, now: datetime) -> Optional[int]:
        """Insert the association; None when the pair was already linked."""
        stmt = (
            dialect_insert(self.db, DeviceUser)
            .values(user_id=user_id, device_id=device_id, created_at=now)
            .on_conflict_do_nothing(index_elements=["user_id", "device_id"])
            .returning(DeviceUser.id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _apply_abuse_policies(
        self,
        user: User,
        device: Device,
        link_id: int,
        source_ip: Optional[str],
        now: datetime,
    ) -> None:
        self.device_cap.enforce(user, device.id, ip_address=source_ip)

        if source_ip:
            self.rate_limiter.enforce(
                source_ip,
                IdentifierType.IP,
                user_id=user.id,
                device_id=device.id,
                ip_address=source_ip,
                now=now,
            )
        self.rate_limiter.enforce(
            str(user.id),
            IdentifierType.USER,
            user_id=user.id,
            device_id=device.id,
            ip_address=source_ip,
            now=now,
        )

        self._detect_churn(user, device, source_ip, now)
        self._detect_rapid_creation(user, device, link_id, source_ip, now)

    def _detect_churn(
        self, user: User, device: Device, source_ip: Optional[str], now: datetime
    ) -> None:
        window_start = now - timedelta(minutes=self.policy.churn_window_minutes)
        recent = (
            self.db.query(func.count(DeviceUser.id))
            .filter(DeviceUser.user_id == user.id, DeviceUser.created_at >= window_start)
            .scalar()
            or 0
        )
        if recent >= self.policy.churn_threshold:
            self.recorder.record(
                RiskEventType.DEVICE_CHURN_DETECTED,
                user_id=user.id,
                device_id=device.id,
                ip_address=source_ip,
                metadata={
                    "devices_in_window": recent,
                    "threshold": self.policy.churn_threshold,
                    "window_minutes": self.policy.churn_window_minutes,
                },
            )

    def _detect_rapid_creation(
        self,
        user: User,
        device: Device,
        link_id: int,
        source_ip: Optional[str],
        now: datetime,
    ) -> None:
        previous = (
            self.db.query(func.max(DeviceUser.created_at))
            .filter(DeviceUser.user_id == user.id, DeviceUser.id != link_id)
            .scalar()
        )
        if previous is None:
            return

        elapsed = (now - previous).total_seconds()
        if elapsed < self.policy.rapid_creation_interval_seconds:
            self.recorder.record(
                RiskEventType.RAPID_DEVICE_CREATION,
                user_id=user.id,
                device_id=device.id,
                ip_address=source_ip,
                metadata={
                    "seconds_since_previous": round(elapsed, 3),
                    "min_interval_seconds": self.policy.rapid_creation_interval_seconds,
                },
            )

    # =========================================================================
    # Rejection bookkeeping
    # =========================================================================

    def _persist_rejection(
        self, exc: PolicyRejectionError, email: str, device_hash: str
    ) -> None:
        if not exc.risk_event:
            return
        risk_event = dict(exc.risk_event)
        metadata = dict(risk_event.pop("metadata", None) or {})
        metadata.update({"email": email, "device_hash": device_hash, "code": exc.code})

        # Rows created by the refused transaction are gone after the rollback
        if risk_event.get("user_id") and self.db.get(User, risk_event["user_id"]) is None:
            risk_event["user_id"] = None
        if risk_event.get("device_id") and self.db.get(Device, risk_event["device_id"]) is None:
            risk_event["device_id"] = None

        self._record_after_rollback(metadata=metadata, **risk_event)

    def _record_after_rollback(self, event_type: RiskEventType, **fields) -> None:
        try:
            self.recorder.record(event_type, **fields)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("failed to persist risk event", extra={"event_type": event_type})

    # =========================================================================
    # Evaluation
    # =========================================================================

    def subscriptions_for_device(self, device_id: int) -> List[Subscription]:
        """Paid subscriptions of every user linked to the device, newest first."""
        return (
            self.db.query(Subscription)
            .join(DeviceUser, DeviceUser.user_id == Subscription.user_id)
            .filter(
                DeviceUser.device_id == device_id,
                Subscription.status != SubscriptionStatus.TRIAL,
            )
            .order_by(Subscription.updated_at.desc(), Subscription.id.desc())
            .all()
        )

    def best_subscription(self, device_id: int, now: datetime) -> Optional[Subscription]:
        subscriptions = self.subscriptions_for_device(device_id)
        active = [s for s in subscriptions if is_subscription_active(s, now)]
        if active:
            return max(active, key=lambda s: s.current_period_end or datetime.max)
        return subscriptions[0] if subscriptions else None

    def evaluate_device(self, device: Device, now: Optional[datetime] = None) -> LicenseSnapshot:
        now = now or utcnow()
        subscription = self.best_subscription(device.id, now)
        plan = subscription.plan if subscription is not None else None
        return evaluate_license(device, subscription, plan, now)

    def get_device(self, device_hash: str) -> Device:
        device = self.db.query(Device).filter(Device.device_hash == device_hash).first()
        if device is None:
            raise DeviceNotFoundError("Device not found", {"device_hash": device_hash})
        return device

    def evaluate_license(self, device_hash: str, now: Optional[datetime] = None) -> LicenseSnapshot:
        """Read-only license snapshot for a fingerprint."""
        return self.evaluate_device(self.get_device(device_hash), now)

    def touch_device(self, device: Device, now: Optional[datetime] = None) -> None:
        """Record device activity. Commits."""
        device.last_seen_at = now or utcnow()
        self.db.commit()
