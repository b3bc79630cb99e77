"""Test data for registration, billing webhook and license tests.

Device fingerprints mirror real client fingerprints: 90 hex-ish characters.
Stripe payloads only carry the fields the reconciler reads.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Optional

WEBHOOK_SECRET = "whsec_test_secret"


def device_hash(n: int = 1) -> str:
    """Deterministic 90-character device fingerprint."""
    digest = hashlib.sha256(f"device-{n}".encode()).hexdigest()
    return digest + hashlib.sha256(digest.encode()).hexdigest()[:26]


DEVICE_HASH = device_hash(1)
OTHER_DEVICE_HASH = device_hash(2)
SHORT_DEVICE_HASH = "a" * 63

TEST_EMAIL = "user@example.com"
OTHER_EMAIL = "other@example.com"


def epoch(moment: datetime) -> int:
    """Naive UTC datetime to unix seconds, as Stripe sends timestamps."""
    return int(moment.replace(tzinfo=timezone.utc).timestamp())


# ============================================================================
# Stripe Objects
# ============================================================================

def checkout_session(
    subscription_id: str = "sub_test_1",
    customer_id: str = "cus_test_1",
    user_id: Optional[int] = None,
    plan: Optional[str] = None,
    email: Optional[str] = None,
) -> dict:
    metadata = {}
    if user_id is not None:
        metadata["user_id"] = str(user_id)
    if plan is not None:
        metadata["plan"] = plan
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer_id,
        "subscription": subscription_id,
        "metadata": metadata,
    }
    if email is not None:
        session["customer_details"] = {"email": email}
    return session


def stripe_subscription(
    subscription_id: str = "sub_test_1",
    customer_id: str = "cus_test_1",
    status: str = "active",
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    canceled_at: Optional[datetime] = None,
    periods_on_item: bool = False,
    metadata: Optional[dict] = None,
) -> dict:
    """Subscription object; newer API versions put periods on the items."""
    periods = {
        "current_period_start": epoch(period_start) if period_start else None,
        "current_period_end": epoch(period_end) if period_end else None,
    }
    subscription = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": epoch(canceled_at) if canceled_at else None,
        "trial_end": None,
        "metadata": metadata or {},
        "items": {"object": "list", "data": [{"id": "si_test_1", **(periods if periods_on_item else {})}]},
    }
    if not periods_on_item:
        subscription.update(periods)
    return subscription


def stripe_event(event_id: str, event_type: str, data_object: dict) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for `payload`."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_event(event: dict, secret: str = WEBHOOK_SECRET):
    """Serialize an event and return (body, headers) ready to POST."""
    body = json.dumps(event).encode()
    return body, {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}
