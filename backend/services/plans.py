"""Plan catalog: every plan name maps to exactly one feature bundle."""

from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy.orm import Session

from models.billing import Plan, PlanName


@dataclass(frozen=True)
class PlanFeatures:
    """Features a client may unlock."""

    max_cameras: int
    pdf_export: bool
    fps_limit: int
    cloud_backup: bool

    def to_dict(self) -> dict:
        return asdict(self)


NO_FEATURES = PlanFeatures(max_cameras=0, pdf_export=False, fps_limit=0, cloud_backup=False)

PLAN_CATALOG = {
    PlanName.TRIAL: PlanFeatures(max_cameras=2, pdf_export=False, fps_limit=30, cloud_backup=False),
    PlanName.BASIC: PlanFeatures(max_cameras=4, pdf_export=True, fps_limit=60, cloud_backup=False),
    PlanName.PRO: PlanFeatures(max_cameras=999, pdf_export=True, fps_limit=120, cloud_backup=True),
}


def parse_plan_name(value: Optional[str], default: PlanName) -> PlanName:
    """Map a free-form plan label onto the closed plan set."""
    if not value:
        return default
    try:
        return PlanName(value.strip().lower())
    except ValueError:
        return default


def features_for(plan: Optional[Plan]) -> PlanFeatures:
    """Feature bundle stored for a plan row (all off when there is no plan)."""
    if plan is None:
        return NO_FEATURES
    return PlanFeatures(
        max_cameras=plan.max_cameras,
        pdf_export=plan.pdf_export,
        fps_limit=plan.fps_limit,
        cloud_backup=plan.cloud_backup,
    )


def get_plan(db: Session, name: PlanName) -> Optional[Plan]:
    return db.query(Plan).filter(Plan.name == name).first()


def seed_plans(db: Session) -> int:
    """Insert or update every catalog plan. Returns how many were inserted.

    Does not commit; the caller owns the transaction.
    """
    inserted = 0
    for name, features in PLAN_CATALOG.items():
        plan = get_plan(db, name)
        if plan is None:
            db.add(Plan(name=name, **features.to_dict()))
            inserted += 1
        else:
            for field, value in features.to_dict().items():
                setattr(plan, field, value)
    db.flush()
    return inserted
