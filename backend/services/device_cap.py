"""Per-user device cap."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.abuse import RiskEventType
from models.device import DeviceUser
from models.user import User
from services.abuse_policy import AbusePolicy, EnforcementMode
from services.exceptions import DeviceCapExceededError
from services.risk_events import RiskEventRecorder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceCapCheck:
    current: int
    max: int

    @property
    def exceeded(self) -> bool:
        return self.current >= self.max


class DeviceCapEnforcer:
    """Refuses (or flags) linking another device once a user is at their cap."""

    def __init__(
        self,
        db: Session,
        policy: Optional[AbusePolicy] = None,
        recorder: Optional[RiskEventRecorder] = None,
    ):
        self.db = db
        self.policy = policy or AbusePolicy.from_config()
        self.recorder = recorder or RiskEventRecorder(db)

    def cap_for(self, user: User) -> int:
        if user.max_devices is not None:
            return user.max_devices
        return self.policy.default_max_devices_per_user

    def count_devices(self, user_id: int, exclude_device_id: Optional[int] = None) -> int:
        query = self.db.query(func.count(func.distinct(DeviceUser.device_id))).filter(
            DeviceUser.user_id == user_id
        )
        if exclude_device_id is not None:
            query = query.filter(DeviceUser.device_id != exclude_device_id)
        return query.scalar() or 0

    def check(self, user: User, exclude_device_id: Optional[int] = None) -> DeviceCapCheck:
        return DeviceCapCheck(
            current=self.count_devices(user.id, exclude_device_id),
            max=self.cap_for(user),
        )

    def enforce(
        self,
        user: User,
        device_id: int,
        ip_address: Optional[str] = None,
    ) -> DeviceCapCheck:
        """Check the cap before `device_id` is counted against the user.

        Same contract as DeviceCreationRateLimiter.enforce: DETECT records the
        risk event and returns, BLOCK raises DeviceCapExceededError carrying it.
        """
        cap = self.check(user, exclude_device_id=device_id)
        if not cap.exceeded:
            return cap

        risk_event = {
            "event_type": RiskEventType.DEVICE_CAP_EXCEEDED,
            "user_id": user.id,
            "device_id": device_id,
            "ip_address": ip_address,
            "metadata": {
                "current": cap.current,
                "max": cap.max,
                "mode": self.policy.device_cap_mode.value,
            },
        }

        if self.policy.device_cap_mode == EnforcementMode.DETECT:
            self.recorder.record(**risk_event)
            return cap

        logger.warning(
            "device cap exceeded",
            extra={"user_id": user.id, "current": cap.current, "max": cap.max},
        )
        raise DeviceCapExceededError(
            f"Maximum {cap.max} devices allowed per user",
            details={"current": cap.current, "max": cap.max},
            risk_event=risk_event,
        )
