"""Trial state machine: one 14-day trial per device, started at most once."""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from database import utcnow
from models.device import Device
from services.exceptions import TrialIntegrityError


logger = logging.getLogger(__name__)

TRIAL_DURATION = timedelta(days=14)


class TrialState(str, enum.Enum):
    # A device is consumed the instant its trial starts; there is no separate
    # "running" state because consumption tracks "ever had a trial".
    NO_TRIAL = "no_trial"
    TRIAL_CONSUMED = "trial_consumed"


@dataclass(frozen=True)
class TrialWindow:
    started_at: datetime
    ended_at: datetime
    newly_started: bool


class TrialService:
    """Starts trials and checks the trial invariants of device rows."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def trial_end_for(started_at: datetime) -> datetime:
        return started_at + TRIAL_DURATION

    @staticmethod
    def trial_state(device: Device) -> TrialState:
        if device.trial_consumed:
            return TrialState.TRIAL_CONSUMED
        return TrialState.NO_TRIAL

    @staticmethod
    def verify_integrity(device: Device) -> None:
        """Raise TrialIntegrityError if the device breaks a trial invariant."""
        started, ended = device.trial_started_at, device.trial_ended_at

        violation = None
        if (started is None) != (ended is None):
            violation = "partial_trial_timestamps"
        elif started is not None and ended - started != TRIAL_DURATION:
            violation = "trial_duration_mismatch"
        elif device.trial_consumed and started is None:
            violation = "consumed_without_timestamps"
        elif not device.trial_consumed and started is not None:
            violation = "timestamps_without_consumed"

        if violation:
            raise TrialIntegrityError(
                f"Device {device.id} violates trial invariant: {violation}",
                device_id=device.id,
                violation=violation,
            )

    def start_trial_if_eligible(
        self, device: Device, now: Optional[datetime] = None
    ) -> TrialWindow:
        """Start the device's trial unless it was already consumed.

        Uses a single conditional UPDATE so that among concurrent callers
        exactly one write takes effect; the others re-read and return the
        winner's timestamps. Does not commit.
        """
        if device.trial_consumed:
            self.verify_integrity(device)
            return TrialWindow(device.trial_started_at, device.trial_ended_at, False)

        self.verify_integrity(device)

        started_at = now or utcnow()
        result = self.db.execute(
            update(Device)
            .where(
                Device.id == device.id,
                Device.trial_consumed.is_(False),
                Device.trial_started_at.is_(None),
            )
            .values(
                trial_started_at=started_at,
                trial_ended_at=self.trial_end_for(started_at),
                trial_consumed=True,
            )
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1

        # Re-read: either our own write or the concurrent winner's
        self.db.refresh(device)
        self.verify_integrity(device)

        if won:
            logger.info(
                "trial started",
                extra={"device_id": device.id, "trial_ended_at": device.trial_ended_at.isoformat()},
            )
        else:
            logger.info("trial already started by a concurrent request", extra={"device_id": device.id})

        return TrialWindow(device.trial_started_at, device.trial_ended_at, won)
