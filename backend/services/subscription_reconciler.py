"""
Subscription reconciler.

Maps billing provider lifecycle events onto local Subscription rows. Every
event goes through the WebhookLedger so each event id is applied once, and
every effect assigns absolute values so re-applying converges to the same row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import utcnow
from models.abuse import RiskEventType
from models.billing import PlanName, Subscription, SubscriptionStatus
from models.user import User
from services.billing_gateway import BillingGateway
from services.entitlements import default_paid_plan
from services.exceptions import SubscriptionNotFoundError
from services.plans import get_plan, parse_plan_name
from services.risk_events import RiskEventRecorder
from services.webhook_ledger import WebhookLedger


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

ACK_PROCESSED = "processed"
ACK_DUPLICATE = "duplicate"
ACK_IGNORED = "ignored"

ACTIVE_PROVIDER_STATUSES = frozenset({"active", "trialing"})


@dataclass(frozen=True)
class WebhookAck:
    event_id: str
    status: str

    def to_dict(self) -> dict:
        return {"received": True, "event_id": self.event_id, "status": self.status}


def from_epoch(value: Any) -> Optional[datetime]:
    """Provider timestamps are unix seconds; store them as naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    if provider_status in ACTIVE_PROVIDER_STATUSES:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.EXPIRED


def _metadata(obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not obj:
        return {}
    return obj.get("metadata") or {}


def _first_item(provider_subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (provider_subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


class SubscriptionReconciler:
    """Applies verified billing events to local subscriptions."""

    def __init__(
        self,
        db: Session,
        gateway: Optional[BillingGateway] = None,
        recorder: Optional[RiskEventRecorder] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.recorder = recorder or RiskEventRecorder(db)
        self.ledger = WebhookLedger(db)

    # =========================================================================
    # Entry point
    # =========================================================================

    def ingest_billing_event(
        self,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> WebhookAck:
        """Apply one event (the provider's `data.object`) at most once.

        Provider lookups happen before the ledger transaction opens; a
        provider failure raises BillingProviderError and nothing is written.
        """
        if self.ledger.is_processed(event_id):
            self.db.rollback()
            logger.info(
                "duplicate billing event",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return WebhookAck(event_id, ACK_DUPLICATE)

        effect = self._effect_for(event_type, payload)
        applied = self.ledger.process(event_id, event_type, effect or (lambda: None))

        if not applied:
            return WebhookAck(event_id, ACK_DUPLICATE)
        if effect is None:
            logger.info("unhandled billing event type recorded", extra={"event_type": event_type})
            return WebhookAck(event_id, ACK_IGNORED)
        return WebhookAck(event_id, ACK_PROCESSED)

    def _effect_for(
        self, event_type: str, payload: Dict[str, Any]
    ) -> Optional[Callable[[], None]]:
        if event_type == CHECKOUT_COMPLETED:
            provider_subscription, provider_customer = self._fetch_checkout_context(payload)
            return lambda: self.apply_checkout_completed(
                payload, provider_subscription, provider_customer
            )
        if event_type == SUBSCRIPTION_UPDATED:
            return lambda: self.apply_subscription_updated(payload)
        if event_type == SUBSCRIPTION_DELETED:
            return lambda: self.apply_subscription_deleted(payload)
        return None

    def _fetch_checkout_context(self, session: Dict[str, Any]):
        if self.gateway is None:
            return None, None

        provider_subscription = None
        if session.get("subscription"):
            provider_subscription = self.gateway.retrieve_subscription(session["subscription"])

        provider_customer = None
        if not _metadata(session).get("user_id") and session.get("customer"):
            provider_customer = self.gateway.retrieve_customer(session["customer"])

        return provider_subscription, provider_customer

    # =========================================================================
    # Lookups
    # =========================================================================

    def find_subscription(
        self,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """Look a subscription up by provider ids.

        With for_update the row is locked until commit, so concurrent effects
        on the same subscription apply one after the other (a no-op on SQLite).
        """
        query = self.db.query(Subscription)
        if for_update:
            query = query.with_for_update().populate_existing()

        if external_subscription_id:
            subscription = query.filter(
                Subscription.external_subscription_id == external_subscription_id
            ).first()
            if subscription:
                return subscription
        if external_customer_id:
            return query.filter(
                Subscription.external_customer_id == external_customer_id
            ).first()
        return None

    def _require_subscription(self, provider_subscription: Dict[str, Any]) -> Subscription:
        subscription = self.find_subscription(provider_subscription.get("id"), for_update=True)
        if subscription is None:
            # The creating event has not landed yet; the provider will redeliver
            raise SubscriptionNotFoundError(provider_subscription.get("id"))
        return subscription

    def _user_from_metadata(self, metadata: Dict[str, Any]) -> Optional[User]:
        raw = metadata.get("user_id")
        if raw is None:
            return None
        try:
            user_id = int(raw)
        except (TypeError, ValueError):
            return None
        return self.db.get(User, user_id)

    def resolve_user(
        self,
        session: Dict[str, Any],
        provider_customer: Optional[Dict[str, Any]] = None,
    ) -> Optional[User]:
        """Find the local user a checkout belongs to.

        Order: session metadata, then the provider customer's metadata, then
        the email captured at checkout.
        """
        user = self._user_from_metadata(_metadata(session))
        if user is None:
            user = self._user_from_metadata(_metadata(provider_customer))
        if user is None:
            email = (session.get("customer_details") or {}).get("email") or session.get(
                "customer_email"
            )
            if email:
                user = (
                    self.db.query(User)
                    .filter(func.lower(User.email) == email.strip().lower())
                    .first()
                )
        return user

    # =========================================================================
    # Effects
    # =========================================================================

    def apply_provider_fields(
        self, subscription: Subscription, provider_subscription: Dict[str, Any]
    ) -> None:
        """Copy billing period fields, falling back to the first subscription item."""
        item = _first_item(provider_subscription)
        period_start = provider_subscription.get("current_period_start") or item.get(
            "current_period_start"
        )
        period_end = provider_subscription.get("current_period_end") or item.get(
            "current_period_end"
        )

        subscription.current_period_start = from_epoch(period_start)
        subscription.current_period_end = from_epoch(period_end)
        subscription.cancel_at_period_end = bool(provider_subscription.get("cancel_at_period_end"))
        subscription.canceled_at = from_epoch(provider_subscription.get("canceled_at"))
        subscription.trial_end = from_epoch(provider_subscription.get("trial_end"))

    def _assign_plan(self, subscription: Subscription, label: Optional[str], default: PlanName):
        plan = get_plan(self.db, parse_plan_name(label, default))
        if plan is not None:
            subscription.plan_id = plan.id

    def apply_checkout_completed(
        self,
        session: Dict[str, Any],
        provider_subscription: Optional[Dict[str, Any]] = None,
        provider_customer: Optional[Dict[str, Any]] = None,
    ) -> Optional[Subscription]:
        external_subscription_id = session.get("subscription")
        external_customer_id = session.get("customer")

        user = self.resolve_user(session, provider_customer)
        if user is None:
            # Acknowledged so the provider stops retrying; left for manual review
            self.recorder.record(
                RiskEventType.SUSPICIOUS_PATTERN,
                metadata={
                    "reason": "checkout_without_user",
                    "external_customer_id": external_customer_id,
                    "external_subscription_id": external_subscription_id,
                },
            )
            return None

        subscription = self.find_subscription(
            external_subscription_id, external_customer_id, for_update=True
        )
        if subscription is None:
            subscription = Subscription(user_id=user.id)
            self.db.add(subscription)

        subscription.user_id = user.id
        if external_customer_id:
            subscription.external_customer_id = external_customer_id
        if external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
        subscription.status = SubscriptionStatus.ACTIVE

        plan_label = _metadata(session).get("plan") or _metadata(provider_subscription).get("plan")
        self._assign_plan(subscription, plan_label, default_paid_plan())

        if provider_subscription:
            self.apply_provider_fields(subscription, provider_subscription)

        self.db.flush()
        logger.info(
            "subscription activated from checkout",
            extra={"subscription_id": subscription.id, "user_id": user.id},
        )
        return subscription

    def apply_subscription_updated(self, provider_subscription: Dict[str, Any]) -> Subscription:
        subscription = self._require_subscription(provider_subscription)

        previous_status = subscription.status
        was_deleted = (
            previous_status == SubscriptionStatus.EXPIRED and subscription.canceled_at is not None
        )
        new_status = map_provider_status(provider_subscription.get("status"))

        subscription.status = new_status
        if provider_subscription.get("customer") and not subscription.external_customer_id:
            subscription.external_customer_id = provider_subscription["customer"]
        self.apply_provider_fields(subscription, provider_subscription)

        plan_label = _metadata(provider_subscription).get("plan")
        if plan_label:
            self._assign_plan(subscription, plan_label, default_paid_plan())

        if was_deleted and new_status == SubscriptionStatus.ACTIVE:
            self.recorder.record(
                RiskEventType.SUSPICIOUS_PATTERN,
                user_id=subscription.user_id,
                metadata={
                    "reason": "status_regression",
                    "external_subscription_id": subscription.external_subscription_id,
                    "previous_status": previous_status.value,
                    "provider_status": provider_subscription.get("status"),
                },
            )

        self.db.flush()
        logger.info(
            "subscription updated",
            extra={"subscription_id": subscription.id, "status": new_status.value},
        )
        return subscription

    def apply_subscription_deleted(self, provider_subscription: Dict[str, Any]) -> Subscription:
        subscription = self._require_subscription(provider_subscription)

        subscription.status = SubscriptionStatus.EXPIRED
        subscription.canceled_at = (
            from_epoch(provider_subscription.get("canceled_at"))
            or subscription.canceled_at
            or utcnow()
        )

        self.db.flush()
        logger.info("subscription expired by deletion", extra={"subscription_id": subscription.id})
        return subscription
