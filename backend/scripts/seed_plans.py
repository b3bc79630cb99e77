#!/usr/bin/env python3
"""Seed the plans table from the plan catalog."""

import sys
from pathlib import Path

# Add parent directory to path so we can import from backend modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import Base, SessionLocal, engine
from models.billing import Plan
from services.plans import PLAN_CATALOG, seed_plans


def main():
    """Create missing tables, then insert or update every catalog plan."""
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        inserted = seed_plans(db)
        db.commit()

        print(f"✓ Seeding complete!")
        print(f"  - Inserted: {inserted} plans")
        print(f"  - Updated: {len(PLAN_CATALOG) - inserted} plans")
        print(f"  - Total in database: {db.query(Plan).count()}")

    except Exception as e:
        db.rollback()
        print(f"✗ Error seeding plans: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    print("Starting plan seed script...")
    main()
