# disputes.py
"""
Dispute state machine for a paid slot.

    NoDispute --file--> Disputed_AwaitingTutor --contest--> Disputed_TutorContested
                                               --agree----> Disputed_TutorAgreedRefund
    Disputed_TutorContested | Disputed_TutorAgreedRefund --admin--> Resolved_Refunded | Resolved_Rejected
    NoDispute --tutor reschedules before start--> Cancelled_ByTutorReschedule

The state lives on the slot row (`dispute_state`). Each transition is one
transaction that opens with a compare-and-set on the slot's version and
expected state, followed by conditional writes on the dispute case and the
attendance record. A request that loses a race is re-read and reported as
AlreadyResponded when the winning write already answered it, otherwise as a
retryable ConcurrentUpdate.
"""
import logging
from typing import Optional

from databases import Database

from booking_attendance.data_models import (
    DisputeCase,
    DisputeState,
    DisputeStatus,
    Party,
    RecordedBy,
    RejectionCause,
    SlotSnapshot,
    SlotStatus,
    TutorResponse,
)
from booking_attendance.errors import AlreadyResponded, ConcurrentUpdate, InvalidTransition
from booking_attendance.evidence import EvidenceRegistry
from booking_attendance.ledger import PaymentLedger
from booking_attendance.slots import SlotService
from booking_attendance.time_window import TimeWindowGuard

logger = logging.getLogger(__name__)


class DisputeCoordinator(SlotService):
    """Moves a slot through its dispute states on behalf of the learner and the tutor."""

    def __init__(self, db: Database, guard: TimeWindowGuard, evidence: EvidenceRegistry,
                 ledger: PaymentLedger):
        super().__init__(db, guard)
        self.evidence = evidence
        self.ledger = ledger

    # ---- learner -----------------------------------------------------

    async def file_dispute(self, slot_id: int, user, reason: str, evidence_ref: Optional[str]) -> SlotSnapshot:
        """Learner claims the tutor did not attend. Requires a reason and evidence."""
        snapshot = await self.checked_snapshot(slot_id)
        slot = snapshot.slot
        self.require_party(slot, user, Party.LEARNER)
        now = self.guard.require_actionable(slot)

        if snapshot.open_dispute is not None:
            raise AlreadyResponded(f"Slot {slot.id} already has an open dispute.", slot_id=slot.id,
                                   dispute_id=snapshot.dispute.id)
        if slot.dispute_state is not DisputeState.NO_DISPUTE:
            raise InvalidTransition(f"Slot {slot.id} cannot be disputed from {slot.dispute_state.value}.",
                                    slot_id=slot.id)
        if slot.status is not SlotStatus.PAID:
            raise InvalidTransition(f"Only a paid slot can be disputed (slot is {slot.status.value}).",
                                    slot_id=slot.id)
        if snapshot.learner.attended is True:
            raise InvalidTransition("You already confirmed attending this slot.", slot_id=slot.id)
        reason = (reason or "").strip()
        if not reason:
            raise InvalidTransition("A dispute needs a reason.", slot_id=slot.id)
        await self.evidence.require_attachable(evidence_ref, user.id)

        dispute_values = {
            "slot_id": slot.id,
            "learner_id": user.id,
            "reason": reason,
            "learner_evidence_ref": evidence_ref,
            "created_at": now,
            "forced": False,
        }
        tutor = snapshot.tutor
        if tutor.attended is True:
            # The tutor already proved attendance; that stands as the answer.
            state = DisputeState.TUTOR_CONTESTED
            dispute_values.update(
                status=DisputeStatus.SUBMITTED,
                tutor_response=TutorResponse.CONTESTED,
                tutor_evidence_ref=tutor.evidence_ref,
                tutor_responded_at=tutor.responded_at,
            )
        else:
            state = DisputeState.AWAITING_TUTOR
            dispute_values.update(status=DisputeStatus.PENDING)

        async with self.db.transaction():
            if not await self.slots.claim_slot(slot, {"dispute_state": state},
                                               status=SlotStatus.PAID, dispute_state=DisputeState.NO_DISPUTE):
                current = await self.slots.load_snapshot(slot.id)
                if current.dispute is not None:
                    raise AlreadyResponded(f"Slot {slot.id} already has a dispute.", slot_id=slot.id,
                                           dispute_id=current.dispute.id)
                raise ConcurrentUpdate(slot_id=slot.id)
            dispute_id = await self.slots.insert_dispute(**dispute_values)
            await self.evidence.attach(evidence_ref, slot.id, Party.LEARNER, now)

        logger.info("Dispute %s filed on slot %s -> %s", dispute_id, slot.id, state.value,
                    extra={"slot_id": slot.id, "dispute_id": dispute_id, "state": state.value})
        return await self.slots.load_snapshot(slot.id)

    # ---- tutor -------------------------------------------------------

    async def contest(self, dispute_id: int, user, evidence_ref: Optional[str]) -> SlotSnapshot:
        """Tutor answers the dispute with proof of attendance."""
        snapshot, dispute, now = await self._tutor_turn(dispute_id, user)
        await self.evidence.require_attachable(evidence_ref, user.id)
        return await self._respond(
            snapshot, dispute, now,
            state=DisputeState.TUTOR_CONTESTED,
            response=TutorResponse.CONTESTED,
            attended=True,
            evidence_ref=evidence_ref,
        )

    async def agree_refund(self, dispute_id: int, user) -> SlotSnapshot:
        """Tutor concedes. Terminal: no later tutor response is accepted."""
        snapshot, dispute, now = await self._tutor_turn(dispute_id, user)
        return await self._respond(
            snapshot, dispute, now,
            state=DisputeState.TUTOR_AGREED_REFUND,
            response=TutorResponse.AGREED_REFUND,
            attended=False,
            evidence_ref=None,
        )

    async def _tutor_turn(self, dispute_id: int, user):
        dispute = await self.slots.get_dispute(dispute_id)
        snapshot = await self.checked_snapshot(dispute.slot_id)
        dispute = snapshot.dispute
        slot = snapshot.slot
        self.require_party(slot, user, Party.TUTOR)
        now = self.guard.require_actionable(slot)

        if dispute.tutor_response is not None:
            raise AlreadyResponded(
                f"The tutor already answered dispute {dispute.id} ({dispute.tutor_response.value}).",
                dispute_id=dispute.id,
            )
        if dispute.status is not DisputeStatus.PENDING:
            raise InvalidTransition(f"Dispute {dispute.id} is {dispute.status.value}.", dispute_id=dispute.id)
        return snapshot, dispute, now

    async def _respond(self, snapshot: SlotSnapshot, dispute: DisputeCase, now, *, state: DisputeState,
                       response: TutorResponse, attended: bool, evidence_ref: Optional[str]) -> SlotSnapshot:
        slot = snapshot.slot
        async with self.db.transaction():
            if not await self.slots.claim_slot(slot, {"dispute_state": state},
                                               dispute_state=DisputeState.AWAITING_TUTOR):
                await self._raise_lost_response(dispute.id)
            if not await self.slots.set_dispute(
                dispute,
                {
                    "status": DisputeStatus.SUBMITTED,
                    "tutor_response": response,
                    "tutor_evidence_ref": evidence_ref,
                    "tutor_responded_at": now,
                },
                status=DisputeStatus.PENDING,
                tutor_response=None,
            ):
                await self._raise_lost_response(dispute.id)
            if not await self.slots.set_attendance(
                slot.id, Party.TUTOR,
                {"attended": attended, "evidence_ref": evidence_ref, "responded_at": now,
                 "recorded_by": RecordedBy.PARTY},
                attended=None,
            ):
                raise AlreadyResponded(f"The tutor has already responded for slot {slot.id}.", slot_id=slot.id)
            if evidence_ref is not None:
                await self.evidence.attach(evidence_ref, slot.id, Party.TUTOR, now)

        logger.info("Tutor answered dispute %s with %s -> %s", dispute.id, response.value, state.value,
                    extra={"slot_id": slot.id, "dispute_id": dispute.id, "state": state.value})
        return await self.slots.load_snapshot(slot.id)

    async def _raise_lost_response(self, dispute_id: int):
        current = await self.slots.get_dispute(dispute_id)
        if current.tutor_response is not None or current.status is not DisputeStatus.PENDING:
            raise AlreadyResponded(f"The tutor already answered dispute {dispute_id}.", dispute_id=dispute_id)
        raise ConcurrentUpdate(dispute_id=dispute_id)

    # ---- tutor reschedule --------------------------------------------

    async def cancel_for_reschedule(self, slot_id: int, user) -> SlotSnapshot:
        """
        Tutor's new availability no longer covers a slot that has not started.

        A paid slot is rejected with cause `reschedule` and refunded without any
        evidence trail; an unpaid one is simply cancelled.
        """
        snapshot = await self.checked_snapshot(slot_id)
        slot = snapshot.slot
        self.require_party(slot, user, Party.TUTOR)
        now = self.guard.now()

        if not self.guard.is_upcoming(slot, now):
            raise InvalidTransition(f"Slot {slot.id} has already started and cannot be rescheduled.",
                                    slot_id=slot.id)
        if slot.dispute_state is not DisputeState.NO_DISPUTE:
            raise InvalidTransition(f"Slot {slot.id} cannot be rescheduled from {slot.dispute_state.value}.",
                                    slot_id=slot.id)

        if slot.status in (SlotStatus.AVAILABLE, SlotStatus.BOOKED):
            async with self.db.transaction():
                if not await self.slots.claim_slot(slot, {"status": SlotStatus.CANCELLED, "archived_at": now},
                                                   status=slot.status):
                    raise ConcurrentUpdate(slot_id=slot.id)
            logger.info("Slot %s cancelled by tutor reschedule (unpaid)", slot.id, extra={"slot_id": slot.id})
            return await self.slots.load_snapshot(slot.id)

        if slot.status is not SlotStatus.PAID:
            raise InvalidTransition(f"Slot {slot.id} is {slot.status.value} and cannot be rescheduled.",
                                    slot_id=slot.id)

        async with self.db.transaction():
            if not await self.slots.claim_slot(
                slot,
                {
                    "status": SlotStatus.REJECTED,
                    "rejection_cause": RejectionCause.RESCHEDULE,
                    "dispute_state": DisputeState.CANCELLED_BY_RESCHEDULE,
                    "archived_at": now,
                },
                status=SlotStatus.PAID,
                dispute_state=DisputeState.NO_DISPUTE,
            ):
                raise ConcurrentUpdate(slot_id=slot.id)
            await self.ledger.notify_refund(slot, RejectionCause.RESCHEDULE, now)

        logger.info("Slot %s -> %s", slot.id, DisputeState.CANCELLED_BY_RESCHEDULE.value,
                    extra={"slot_id": slot.id, "state": DisputeState.CANCELLED_BY_RESCHEDULE.value})
        return await self.slots.load_snapshot(slot.id)
