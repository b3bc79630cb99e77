"""Webhook idempotency ledger: each external event id is applied at most once."""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database import dialect_insert, utcnow
from models.billing import WebhookEvent


logger = logging.getLogger(__name__)


class WebhookLedger:
    """Gates effects on the existence of a webhook_events row.

    The ledger row and the effect share one transaction, so a failed effect
    leaves no ledger row behind and the provider's redelivery is applied.
    """

    def __init__(self, db: Session):
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        return (
            self.db.query(WebhookEvent.id)
            .filter(WebhookEvent.event_id == event_id)
            .first()
            is not None
        )

    def claim(self, event_id: str, event_type: str) -> Optional[int]:
        """Insert the ledger row; return its id, or None if already present."""
        stmt = (
            dialect_insert(self.db, WebhookEvent)
            .values(event_id=event_id, event_type=event_type, processed_at=utcnow())
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(WebhookEvent.id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def process(
        self,
        event_id: str,
        event_type: str,
        apply_effect: Callable[[], None],
    ) -> bool:
        """Apply `apply_effect` exactly once per `event_id` and commit.

        Returns False for a duplicate delivery (the effect is not run).
        Any exception from the effect rolls back the ledger row too and
        propagates to the caller.
        """
        try:
            ledger_id = self.claim(event_id, event_type)
            if ledger_id is None:
                self.db.rollback()
                logger.info(
                    "duplicate webhook event skipped",
                    extra={"event_id": event_id, "event_type": event_type},
                )
                return False

            apply_effect()
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "webhook event failed; ledger entry rolled back",
                extra={"event_id": event_id, "event_type": event_type},
            )
            raise

        logger.info(
            "webhook event processed",
            extra={"event_id": event_id, "event_type": event_type},
        )
        return True
