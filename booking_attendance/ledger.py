# ledger.py
import logging
from datetime import datetime
from typing import List, Optional

from databases import Database

from booking_attendance.data_models import BookedSlot, RejectionCause, as_utc
from booking_attendance.models import refund_notifications

logger = logging.getLogger(__name__)


class PaymentLedger:
    """External payment system. The protocol only tells it a refund is owed."""

    async def notify_refund(self, slot: BookedSlot, cause: RejectionCause, now: datetime,
                            dispute_id: Optional[int] = None) -> None:
        raise NotImplementedError


class OutboxPaymentLedger(PaymentLedger):
    """
    Writes refund notifications to an outbox table the payment service polls.

    Called inside the transition's transaction, so a notification exists
    exactly when the refund-causing transition committed.
    """

    def __init__(self, db: Database):
        self.db = db

    async def notify_refund(self, slot: BookedSlot, cause: RejectionCause, now: datetime,
                            dispute_id: Optional[int] = None) -> None:
        await self.db.execute(refund_notifications.insert().values(
            slot_id=slot.id,
            dispute_id=dispute_id,
            cause=cause.value,
            learner_id=slot.learner_id,
            tutor_id=slot.tutor_id,
            payment_id=slot.payment_id,
            created_at=now,
        ))
        logger.info("Refund owed for slot %s (%s)", slot.id, cause.value,
                    extra={"slot_id": slot.id, "dispute_id": dispute_id, "cause": cause.value})

    async def pending(self) -> List[dict]:
        rows = await self.db.fetch_all(
            refund_notifications.select()
            .where(refund_notifications.c.delivered_at.is_(None))
            .order_by(refund_notifications.c.id)
        )
        return [
            {
                "id": row["id"],
                "slot_id": row["slot_id"],
                "dispute_id": row["dispute_id"],
                "cause": row["cause"],
                "learner_id": row["learner_id"],
                "tutor_id": row["tutor_id"],
                "payment_id": row["payment_id"],
                "created_at": as_utc(row["created_at"]),
            }
            for row in rows
        ]

    async def mark_delivered(self, notification_id: int, now: datetime) -> None:
        await self.db.execute(
            refund_notifications.update()
            .where(refund_notifications.c.id == notification_id)
            .values(delivered_at=now)
        )
