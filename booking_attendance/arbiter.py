# arbiter.py
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from databases import Database

from booking_attendance.data_models import (
    DisputeState,
    DisputeStatus,
    OPEN_DISPUTE_STATUSES,
    Outcome,
    Party,
    RecordedBy,
    RejectionCause,
    SlotSnapshot,
    SlotStatus,
)
from booking_attendance.errors import (
    AlreadyResponded,
    ConcurrentUpdate,
    InvalidTransition,
    InvariantViolation,
    NotAuthorized,
)
from booking_attendance.ledger import PaymentLedger
from booking_attendance.projection import find_violations
from booking_attendance.slots import SlotService
from booking_attendance.time_window import TimeWindowGuard

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def require_admin(user) -> None:
    if getattr(user, "role", None) != ADMIN_ROLE:
        raise NotAuthorized("Only an admin can do this.")


class AdminArbiter(SlotService):
    """
    Sole authority that closes a dispute.

    Submitted cases are decided at any time. A case still PENDING can only be
    decided once its window has closed (the tutor never answered); such a
    decision is marked `forced`.
    """

    def __init__(self, db: Database, guard: TimeWindowGuard, ledger: PaymentLedger):
        super().__init__(db, guard)
        self.ledger = ledger

    async def decide(self, dispute_id: int, admin, outcome, note: Optional[str] = None) -> SlotSnapshot:
        require_admin(admin)
        outcome = Outcome(outcome)
        dispute = await self.slots.get_dispute(dispute_id)
        snapshot = await self.checked_snapshot(dispute.slot_id)
        slot, dispute = snapshot.slot, snapshot.dispute
        now = self.guard.now()

        if dispute.status is DisputeStatus.RESOLVED:
            raise AlreadyResponded(f"Dispute {dispute.id} was already decided ({dispute.outcome.value}).",
                                   dispute_id=dispute.id)
        forced = dispute.status is DisputeStatus.PENDING
        if forced and not self.guard.is_overdue(slot, now):
            raise InvalidTransition(
                f"Dispute {dispute.id} is still waiting for the tutor until {slot.end_time.isoformat()}.",
                dispute_id=dispute.id,
            )

        if outcome is Outcome.REFUND:
            state = DisputeState.RESOLVED_REFUNDED
            slot_values = {
                "status": SlotStatus.REJECTED,
                "rejection_cause": RejectionCause.DISPUTED,
                "dispute_state": state,
                "archived_at": now,
            }
        else:
            state = DisputeState.RESOLVED_REJECTED
            slot_values = {"dispute_state": state}
            if snapshot.tutor.attended is True:
                slot_values["status"] = SlotStatus.COMPLETED

        async with self.db.transaction():
            if not await self.slots.claim_slot(slot, slot_values, status=SlotStatus.PAID,
                                               dispute_state=slot.dispute_state):
                await self._raise_lost_decision(dispute.id)
            if not await self.slots.set_dispute(
                dispute,
                {
                    "status": DisputeStatus.RESOLVED,
                    "outcome": outcome,
                    "admin_note": note,
                    "decided_by": admin.id,
                    "forced": forced,
                    "resolved_at": now,
                    "archived_at": now,
                },
                status=dispute.status,
            ):
                await self._raise_lost_decision(dispute.id)
            if outcome is Outcome.DENY:
                # The learner's claim is rejected: the admin records the attendance.
                if not await self.slots.set_attendance(
                    slot.id, Party.LEARNER,
                    {"attended": True, "responded_at": now, "recorded_by": RecordedBy.ADMIN},
                    attended=None,
                ):
                    raise ConcurrentUpdate(slot_id=slot.id)
            else:
                await self.ledger.notify_refund(slot, RejectionCause.DISPUTED, now, dispute_id=dispute.id)

        logger.info("Dispute %s decided %s%s -> %s", dispute.id, outcome.value, " (forced)" if forced else "",
                    state.value, extra={"slot_id": slot.id, "dispute_id": dispute.id, "state": state.value})
        return await self.slots.load_snapshot(slot.id)

    async def _raise_lost_decision(self, dispute_id: int):
        current = await self.slots.get_dispute(dispute_id)
        if current.status is DisputeStatus.RESOLVED:
            raise AlreadyResponded(f"Dispute {dispute_id} was already decided.", dispute_id=dispute_id)
        raise ConcurrentUpdate(dispute_id=dispute_id)

    async def overdue_disputes(self, now: Optional[datetime] = None) -> List[SlotSnapshot]:
        """PENDING cases whose window closed without a tutor response."""
        return await self.slots.overdue_disputes(now or self.guard.now())

    async def open_disputes(self, statuses: Optional[Iterable[DisputeStatus]] = None) -> List[SlotSnapshot]:
        statuses = statuses or OPEN_DISPUTE_STATUSES
        return await self.slots.disputes_by_status([DisputeStatus(s).value for s in statuses])

    async def release_quarantine(self, slot_id: int, admin) -> SlotSnapshot:
        """Lift the hold after a manual repair; refuses while the flags still do not project."""
        require_admin(admin)
        snapshot = await self.slots.load_snapshot(slot_id)
        if not snapshot.slot.quarantined:
            raise InvalidTransition(f"Slot {slot_id} is not quarantined.", slot_id=slot_id)
        _, problems = find_violations(snapshot)
        if problems:
            raise InvariantViolation(f"Slot {slot_id} still needs repair.", problems=problems, slot_id=slot_id)
        await self.slots.release_quarantine(slot_id)
        logger.warning("Slot %s released from quarantine by admin %s", slot_id, admin.id,
                       extra={"slot_id": slot_id})
        return await self.slots.load_snapshot(slot_id)
