#!/usr/bin/env python3
"""Reconcile local subscriptions against Stripe.

Picks up payments whose webhooks were missed or delayed. Requires
STRIPE_SECRET_KEY.
"""

import sys
from pathlib import Path

# Add parent directory to path so we can import from backend modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from database import SessionLocal
from services.billing_gateway import BillingGateway
from services.reconciliation_service import ReconciliationService


def main():
    if not config.STRIPE_SECRET_KEY:
        print("✗ STRIPE_SECRET_KEY is not set")
        sys.exit(1)

    db = SessionLocal()

    try:
        result = ReconciliationService(db, BillingGateway()).reconcile_all()

        print(f"✓ Reconciliation complete!")
        print(f"  - Checked: {result['total']} subscriptions")
        print(f"  - Reconciled: {result['reconciled']}")
        print(f"  - Errors: {result['errors']}")

    except Exception as e:
        db.rollback()
        print(f"✗ Error reconciling subscriptions: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    print("Starting subscription reconciliation...")
    main()
