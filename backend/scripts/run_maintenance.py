#!/usr/bin/env python3
"""Run the housekeeping jobs once (intended for cron).

Prunes old rate-limit windows and risk events, then expires active
subscriptions whose billing period has ended. Optionally reports
subscriptions about to end and a summary of recent risk events.
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path so we can import from backend modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from database import SessionLocal, utcnow
from services.maintenance import MaintenanceService
from services.risk_events import RiskEventRecorder


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--rate-limit-retention-days",
        type=int,
        default=config.RATE_LIMIT_RETENTION_DAYS,
    )
    parser.add_argument(
        "--risk-event-retention-days",
        type=int,
        default=config.RISK_EVENT_RETENTION_DAYS,
    )
    parser.add_argument(
        "--expiring-within-days",
        type=int,
        default=0,
        help="Also list active subscriptions ending within this many days",
    )
    parser.add_argument(
        "--risk-summary-days",
        type=int,
        default=0,
        help="Also summarize risk events from this many past days",
    )
    return parser.parse_args(argv)


def print_risk_summary(db, days):
    recorder = RiskEventRecorder(db)
    end = utcnow()
    summary = recorder.summarize(start=end - timedelta(days=days), end=end)

    print(f"  - Risk events in the last {days} days: {summary['total']}")
    for event_type, count in sorted(summary["by_type"].items()):
        print(f"    {event_type}: {count}")
    for entry in summary["top_ips"]:
        print(f"    ip {entry['ip_address']}: {entry['count']}")
    for event in recorder.list_events(limit=5):
        print(f"    latest {event.created_at.isoformat()} {event.event_type.value}")


def main(argv=None):
    args = parse_args(argv)
    db = SessionLocal()

    try:
        service = MaintenanceService(db)
        result = service.run_all(
            rate_limit_retention_days=args.rate_limit_retention_days,
            risk_event_retention_days=args.risk_event_retention_days,
        )

        print(f"✓ Maintenance complete at {result['timestamp']}")
        print(f"  - Rate limit windows deleted: {result['rate_limit_windows_deleted']}")
        print(f"  - Risk events deleted: {result['risk_events_deleted']}")
        print(f"  - Subscriptions expired: {result['subscriptions_expired']}")

        if args.expiring_within_days > 0:
            expiring = service.expiring_soon(args.expiring_within_days)
            print(f"  - Expiring within {args.expiring_within_days} days: {len(expiring)}")
            for subscription in expiring:
                print(f"    {subscription.user.email}: {subscription.current_period_end.isoformat()}")

        if args.risk_summary_days > 0:
            print_risk_summary(db, args.risk_summary_days)

    except Exception as e:
        db.rollback()
        print(f"✗ Error running maintenance: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
