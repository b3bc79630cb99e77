"""
License status evaluation.

`evaluate_license` is a pure function over already-loaded rows: it never
touches the session, so it can be called inside or outside a transaction.
"""

import enum
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import config
from database import utcnow
from models.billing import Plan, PlanName, Subscription, SubscriptionStatus
from models.device import Device
from services.plans import NO_FEATURES, PLAN_CATALOG, PlanFeatures, features_for, parse_plan_name


class LicenseState(str, enum.Enum):
    """Mutually exclusive outcomes, listed in precedence order."""

    SUBSCRIPTION_ACTIVE = "subscription_active"
    TRIAL_ACTIVE = "trial_active"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    TRIAL_EXPIRED = "trial_expired"
    NO_TRIAL = "no_trial"


class LicenseStatus(str, enum.Enum):
    """Coarse status reported to clients."""

    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"


_STATUS_BY_STATE = {
    LicenseState.SUBSCRIPTION_ACTIVE: LicenseStatus.ACTIVE,
    LicenseState.TRIAL_ACTIVE: LicenseStatus.TRIAL,
    LicenseState.SUBSCRIPTION_EXPIRED: LicenseStatus.EXPIRED,
    LicenseState.TRIAL_EXPIRED: LicenseStatus.EXPIRED,
    LicenseState.NO_TRIAL: LicenseStatus.EXPIRED,
}


@dataclass(frozen=True)
class LicenseSnapshot:
    state: LicenseState
    plan: Optional[PlanName]
    features: PlanFeatures
    expires_at: Optional[datetime]
    days_left: Optional[int]

    @property
    def status(self) -> LicenseStatus:
        return _STATUS_BY_STATE[self.state]

    @property
    def entitled(self) -> bool:
        return self.state in (LicenseState.SUBSCRIPTION_ACTIVE, LicenseState.TRIAL_ACTIVE)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "status": self.status.value,
            "plan": self.plan.value if self.plan else None,
            "features": self.features.to_dict(),
            "expires_at": self.expires_at,
            "days_left": self.days_left,
            "entitled": self.entitled,
        }


def days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days remaining, rounded up and never negative."""
    remaining = (expires_at - now).total_seconds() / 86400
    return max(0, math.ceil(remaining))


def is_subscription_active(subscription: Optional[Subscription], now: datetime) -> bool:
    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
        return False
    period_end = subscription.current_period_end
    return period_end is None or now <= period_end


def is_trial_active(device: Device, now: datetime) -> bool:
    if not device.trial_consumed or device.trial_started_at is None:
        return False
    return device.trial_started_at <= now <= device.trial_ended_at


def default_paid_plan() -> PlanName:
    return parse_plan_name(config.DEFAULT_PAID_PLAN, PlanName.BASIC)


def evaluate_license(
    device: Device,
    subscription: Optional[Subscription] = None,
    plan: Optional[Plan] = None,
    now: Optional[datetime] = None,
) -> LicenseSnapshot:
    """Combine a device's trial and its best subscription into one decision.

    `plan` is the subscription's plan row; when missing, an active
    subscription is granted the default paid plan. Subscriptions still in
    the local "trial" status never count as paid.
    """
    now = now or utcnow()

    paid = subscription
    if paid is not None and paid.status == SubscriptionStatus.TRIAL:
        paid = None

    if is_subscription_active(paid, now):
        if plan is not None:
            plan_name, features = plan.name, features_for(plan)
        else:
            plan_name = default_paid_plan()
            features = PLAN_CATALOG[plan_name]
        period_end = paid.current_period_end
        return LicenseSnapshot(
            state=LicenseState.SUBSCRIPTION_ACTIVE,
            plan=plan_name,
            features=features,
            expires_at=period_end,
            days_left=days_until(period_end, now) if period_end else None,
        )

    if is_trial_active(device, now):
        return LicenseSnapshot(
            state=LicenseState.TRIAL_ACTIVE,
            plan=PlanName.TRIAL,
            features=PLAN_CATALOG[PlanName.TRIAL],
            expires_at=device.trial_ended_at,
            days_left=days_until(device.trial_ended_at, now),
        )

    if paid is not None:
        return LicenseSnapshot(
            state=LicenseState.SUBSCRIPTION_EXPIRED,
            plan=None,
            features=NO_FEATURES,
            expires_at=paid.current_period_end or device.trial_ended_at,
            days_left=0,
        )

    if device.trial_consumed:
        return LicenseSnapshot(
            state=LicenseState.TRIAL_EXPIRED,
            plan=None,
            features=NO_FEATURES,
            expires_at=device.trial_ended_at,
            days_left=0,
        )

    return LicenseSnapshot(
        state=LicenseState.NO_TRIAL,
        plan=None,
        features=NO_FEATURES,
        expires_at=None,
        days_left=0,
    )
