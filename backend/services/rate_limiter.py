"""Per-IP and per-user device creation rate limiting over fixed 24h windows."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from database import dialect_insert, utcnow
from models.abuse import DeviceCreationLimit, IdentifierType, RiskEventType
from services.abuse_policy import AbusePolicy, EnforcementMode
from services.exceptions import RateLimitExceededError
from services.risk_events import RiskEventRecorder


logger = logging.getLogger(__name__)

WINDOW_LENGTH = timedelta(hours=24)
_EPOCH = datetime(1970, 1, 1)


def window_start_for(moment: datetime) -> datetime:
    """Truncate a naive UTC timestamp to the start of its epoch-aligned window."""
    return _EPOCH + ((moment - _EPOCH) // WINDOW_LENGTH) * WINDOW_LENGTH


@dataclass(frozen=True)
class RateLimitResult:
    identifier: str
    identifier_type: IdentifierType
    window_start: datetime
    count: int
    limit: int

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit


class DeviceCreationRateLimiter:
    """Counts device creations per identifier using one atomic upsert.

    The (identifier, identifier_type, window_start) unique constraint makes
    the increment safe across concurrent requests and service instances.
    Nothing here commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db: Session,
        policy: Optional[AbusePolicy] = None,
        recorder: Optional[RiskEventRecorder] = None,
    ):
        self.db = db
        self.policy = policy or AbusePolicy.from_config()
        self.recorder = recorder or RiskEventRecorder(db)

    def limit_for(self, identifier_type: IdentifierType) -> int:
        if identifier_type == IdentifierType.IP:
            return self.policy.max_devices_per_ip_per_window
        return self.policy.max_devices_per_user_per_window

    def check_and_increment(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Increment the current window's counter and report the new value."""
        now = now or utcnow()
        window_start = window_start_for(now)

        stmt = dialect_insert(self.db, DeviceCreationLimit).values(
            identifier=identifier,
            identifier_type=identifier_type,
            window_start=window_start,
            device_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["identifier", "identifier_type", "window_start"],
            set_={
                "device_count": DeviceCreationLimit.device_count + 1,
                "updated_at": now,
            },
        ).returning(DeviceCreationLimit.device_count)
        count = self.db.execute(stmt).scalar_one()

        return RateLimitResult(
            identifier=identifier,
            identifier_type=identifier_type,
            window_start=window_start,
            count=count,
            limit=self.limit_for(identifier_type),
        )

    def current_count(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        now: Optional[datetime] = None,
    ) -> int:
        window_start = window_start_for(now or utcnow())
        row = (
            self.db.query(DeviceCreationLimit.device_count)
            .filter(
                DeviceCreationLimit.identifier == identifier,
                DeviceCreationLimit.identifier_type == identifier_type,
                DeviceCreationLimit.window_start == window_start,
            )
            .first()
        )
        return row.device_count if row else 0

    def enforce(
        self,
        identifier: str,
        identifier_type: IdentifierType,
        *,
        user_id: Optional[int] = None,
        device_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Count one device creation and apply the configured policy on breach.

        In DETECT mode the risk event is recorded in the current transaction
        and the result is returned. In BLOCK mode RateLimitExceededError is
        raised carrying the risk event, which the caller persists after
        rolling the refused transaction back.
        """
        result = self.check_and_increment(identifier, identifier_type, now=now)
        if not result.exceeded:
            return result

        metadata = {
            "identifier_type": identifier_type.value,
            "current": result.count,
            "max": result.limit,
            "window_start": result.window_start.isoformat(),
            "mode": self.policy.rate_limit_mode.value,
        }
        risk_event = {
            "event_type": RiskEventType.DEVICE_CREATION_RATE_LIMIT,
            "user_id": user_id,
            "device_id": device_id,
            "ip_address": ip_address,
            "metadata": metadata,
        }

        if self.policy.rate_limit_mode == EnforcementMode.DETECT:
            self.recorder.record(**risk_event)
            return result

        if identifier_type == IdentifierType.IP:
            message = (
                "Too many devices created from this IP address. "
                f"Limit: {result.limit} per 24 hours"
            )
        else:
            message = f"Too many devices created. Limit: {result.limit} per 24 hours"

        logger.warning(
            "device creation rate limit exceeded",
            extra={"identifier_type": identifier_type.value, "count": result.count},
        )
        raise RateLimitExceededError(
            message,
            details={
                "type": identifier_type.value,
                "current": result.count,
                "max": result.limit,
            },
            risk_event=risk_event,
        )
