"""
Provider reconciliation sweep.

Recovers from missed or delayed webhooks by comparing local subscriptions
with what the billing provider reports. The provider is the source of truth,
except that a locally active subscription is never downgraded while the
provider still lists an active subscription for the customer.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.abuse import RiskEventType
from models.billing import Subscription, SubscriptionStatus
from services.billing_gateway import BillingGateway
from services.exceptions import BillingProviderError
from services.risk_events import RiskEventRecorder
from services.subscription_reconciler import (
    ACTIVE_PROVIDER_STATUSES,
    SubscriptionReconciler,
    map_provider_status,
)


logger = logging.getLogger(__name__)

IN_SYNC = "in_sync"
UPDATED = "updated"
ERROR = "error"


@dataclass(frozen=True)
class ReconciliationOutcome:
    subscription_id: int
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    error: Optional[str] = None


class ReconciliationService:
    def __init__(self, db: Session, gateway: BillingGateway):
        self.db = db
        self.gateway = gateway
        self.recorder = RiskEventRecorder(db)
        self.reconciler = SubscriptionReconciler(db, gateway, self.recorder)

    def _pick_provider_subscription(
        self, subscription: Subscription, provider_subscriptions: List[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        for candidate in provider_subscriptions:
            if candidate.get("status") in ACTIVE_PROVIDER_STATUSES:
                return candidate
        for candidate in provider_subscriptions:
            if candidate.get("id") == subscription.external_subscription_id:
                return candidate
        return provider_subscriptions[0] if provider_subscriptions else None

    def reconcile_subscription(self, subscription: Subscription) -> ReconciliationOutcome:
        """Bring one subscription in line with the provider. Commits."""
        try:
            provider_subscriptions = list(
                self.gateway.list_subscriptions(customer_id=subscription.external_customer_id)
            )
        except BillingProviderError as exc:
            self.db.rollback()
            self.recorder.record(
                RiskEventType.RECONCILIATION_PERFORMED,
                user_id=subscription.user_id,
                metadata={"error": exc.message, "error_type": type(exc).__name__},
            )
            self.db.commit()
            return ReconciliationOutcome(subscription.id, ERROR, error=exc.message)

        provider_subscription = self._pick_provider_subscription(
            subscription, provider_subscriptions
        )
        expected = map_provider_status(
            provider_subscription.get("status") if provider_subscription else None
        )
        previous = subscription.status

        if previous == expected:
            return ReconciliationOutcome(subscription.id, IN_SYNC, previous.value, previous.value)

        subscription.status = expected
        if provider_subscription is not None:
            subscription.external_subscription_id = provider_subscription.get("id")
            self.reconciler.apply_provider_fields(subscription, provider_subscription)

        self.recorder.record(
            RiskEventType.RECONCILIATION_PERFORMED,
            user_id=subscription.user_id,
            metadata={
                "previous_status": previous.value,
                "new_status": expected.value,
                "external_subscription_id": (
                    provider_subscription.get("id") if provider_subscription else None
                ),
                "provider_status": (
                    provider_subscription.get("status") if provider_subscription else "none"
                ),
            },
        )
        self.db.commit()

        logger.info(
            "subscription reconciled",
            extra={
                "subscription_id": subscription.id,
                "previous_status": previous.value,
                "new_status": expected.value,
            },
        )
        return ReconciliationOutcome(subscription.id, UPDATED, previous.value, expected.value)

    def candidates(self) -> List[Subscription]:
        """Local subscriptions that may have paid without the webhook landing."""
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.external_customer_id.isnot(None),
                Subscription.status.in_([SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED]),
            )
            .order_by(Subscription.id)
            .all()
        )

    def reconcile_all(self) -> dict:
        outcomes = [self.reconcile_subscription(s) for s in self.candidates()]
        return {
            "total": len(outcomes),
            "reconciled": sum(1 for o in outcomes if o.action == UPDATED),
            "errors": sum(1 for o in outcomes if o.action == ERROR),
        }
