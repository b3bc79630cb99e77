"""
Stripe billing gateway.

Thin synchronous wrapper around the Stripe SDK. Every Stripe object leaves
this module as a plain dict so the reconciler never depends on SDK types.
"""

import json
import logging
from typing import Any, Dict, Iterator, Optional

import stripe
from stripe import StripeError

import config
from services.exceptions import BillingProviderError, InvalidWebhookError


logger = logging.getLogger(__name__)


def _to_plain(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject into plain dicts and lists (recursive since stripe 11)."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return obj.to_dict()


class BillingGateway:
    """Read-only access to the billing provider plus webhook verification."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self._api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        )

        if self._api_key:
            stripe.api_key = self._api_key

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a dict.

        Fails closed: a missing secret or signature is treated as invalid.
        """
        if not signature:
            raise InvalidWebhookError("Missing Stripe signature")
        if not self._webhook_secret:
            raise InvalidWebhookError("Webhook secret is not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise InvalidWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookError(f"Invalid signature: {e}") from e

        return json.loads(payload)

    # =========================================================================
    # Provider Queries
    # =========================================================================

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return _to_plain(stripe.Subscription.retrieve(subscription_id))
        except StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise BillingProviderError(
                f"Failed to retrieve subscription {subscription_id}",
                {"subscription_id": subscription_id},
                original_error=e,
            ) from e

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        try:
            return _to_plain(stripe.Customer.retrieve(customer_id))
        except StripeError as e:
            logger.error(f"Failed to retrieve customer {customer_id}: {e}")
            raise BillingProviderError(
                f"Failed to retrieve customer {customer_id}",
                {"customer_id": customer_id},
                original_error=e,
            ) from e

    def list_subscriptions(
        self,
        customer_id: Optional[str] = None,
        status: str = "all",
        page_size: int = 100,
    ) -> Iterator[Dict[str, Any]]:
        """Iterate over provider subscriptions, following pagination."""
        params: Dict[str, Any] = {"status": status, "limit": page_size}
        if customer_id:
            params["customer"] = customer_id

        try:
            for subscription in stripe.Subscription.list(**params).auto_paging_iter():
                yield _to_plain(subscription)
        except StripeError as e:
            logger.error(f"Failed to list subscriptions: {e}")
            raise BillingProviderError(
                "Failed to list subscriptions", params, original_error=e
            ) from e


_gateway_instance: Optional[BillingGateway] = None


def get_billing_gateway() -> BillingGateway:
    """Get or create the gateway singleton (FastAPI dependency)."""
    global _gateway_instance

    if _gateway_instance is None:
        _gateway_instance = BillingGateway()

    return _gateway_instance
