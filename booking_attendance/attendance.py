# attendance.py
import logging
from datetime import datetime
from typing import List, Optional

import sqlalchemy
from databases import Database

from booking_attendance.data_models import (
    DisputeState,
    Party,
    RecordedBy,
    SlotSnapshot,
    SlotStatus,
)
from booking_attendance.errors import AlreadyResponded, ConcurrentUpdate, InvalidTransition
from booking_attendance.evidence import EvidenceRegistry
from booking_attendance.models import attendance_records, booked_slots
from booking_attendance.slots import SlotService
from booking_attendance.time_window import TimeWindowGuard

logger = logging.getLogger(__name__)


class AttendanceTracker(SlotService):
    """Records each party's claim that they attended a paid slot."""

    def __init__(self, db: Database, guard: TimeWindowGuard, evidence: EvidenceRegistry):
        super().__init__(db, guard)
        self.evidence = evidence

    async def record_attendance(self, slot_id: int, user, evidence_ref: Optional[str]) -> SlotSnapshot:
        snapshot = await self.checked_snapshot(slot_id)
        slot = snapshot.slot
        party = self.require_party(slot, user)
        now = self.guard.require_actionable(slot)

        # A resend after the slot completed is still an answered question.
        record = snapshot.record_for(party)
        if record is not None and record.attended is not None:
            raise AlreadyResponded(f"The {party.value} has already responded for slot {slot.id}.", slot_id=slot.id)
        if slot.status is not SlotStatus.PAID:
            raise InvalidTransition(f"Attendance can only be recorded on a paid slot (slot is {slot.status.value}).",
                                    slot_id=slot.id)
        if snapshot.open_dispute is not None:
            raise InvalidTransition(
                f"Slot {slot.id} is under dispute; the tutor answers through the dispute, the learner waits "
                "for the admin decision.",
                slot_id=slot.id,
            )
        await self.evidence.require_attachable(evidence_ref, user.id)

        other = snapshot.record_for(Party.LEARNER if party is Party.TUTOR else Party.TUTOR)
        completes = other.attended is True and slot.dispute_state in (
            DisputeState.NO_DISPUTE, DisputeState.RESOLVED_REJECTED
        )
        slot_values = {"status": SlotStatus.COMPLETED} if completes else {}

        async with self.db.transaction():
            if not await self.slots.claim_slot(slot, slot_values, status=SlotStatus.PAID):
                await self._raise_lost_race(slot.id, party)
            if not await self.slots.set_attendance(
                slot.id, party,
                {"attended": True, "evidence_ref": evidence_ref, "responded_at": now,
                 "recorded_by": RecordedBy.PARTY},
                attended=None,
            ):
                raise AlreadyResponded(f"The {party.value} has already responded for slot {slot.id}.",
                                       slot_id=slot.id)
            await self.evidence.attach(evidence_ref, slot.id, party, now)

        logger.info("%s attended slot %s%s", party.value.capitalize(), slot.id,
                    " (completed)" if completes else "",
                    extra={"slot_id": slot.id, "party": party.value})
        return await self.slots.load_snapshot(slot.id)

    async def _raise_lost_race(self, slot_id: int, party: Party):
        current = await self.slots.load_snapshot(slot_id)
        record = current.record_for(party)
        if record is not None and record.attended is not None:
            raise AlreadyResponded(f"The {party.value} has already responded for slot {slot_id}.", slot_id=slot_id)
        raise ConcurrentUpdate(slot_id=slot_id)

    async def auto_confirm_learners(self, now: Optional[datetime] = None) -> List[int]:
        """
        Close out finished sessions the learner never confirmed.

        A slot qualifies when it is still Paid, its window has closed, the tutor
        recorded attendance, the learner did not, and no dispute was ever filed.
        The learner record is marked attended by the system and the slot
        completes. Returns the ids of the slots that were completed.
        """
        now = now or self.guard.now()
        query = (
            booked_slots.select()
            .where(
                booked_slots.c.status == SlotStatus.PAID.value,
                booked_slots.c.dispute_state == DisputeState.NO_DISPUTE.value,
                booked_slots.c.end_time < now,
                booked_slots.c.quarantined_at.is_(None),
                booked_slots.c.id.in_(
                    sqlalchemy.select(attendance_records.c.slot_id).where(
                        attendance_records.c.party == Party.TUTOR.value,
                        attendance_records.c.attended.is_(True))
                ),
            )
            .order_by(booked_slots.c.id)
        )
        completed = []
        for snapshot in await self.slots.load_snapshots(query):
            if snapshot.learner is None or snapshot.learner.attended is not None:
                continue
            async with self.db.transaction():
                if not await self.slots.claim_slot(
                    snapshot.slot, {"status": SlotStatus.COMPLETED},
                    status=SlotStatus.PAID, dispute_state=DisputeState.NO_DISPUTE,
                ):
                    logger.info("Skip auto-confirm of slot %s: changed concurrently", snapshot.slot.id,
                                extra={"slot_id": snapshot.slot.id})
                    continue
                if not await self.slots.set_attendance(
                    snapshot.slot.id, Party.LEARNER,
                    {"attended": True, "responded_at": now, "recorded_by": RecordedBy.SYSTEM},
                    attended=None,
                ):
                    raise ConcurrentUpdate(slot_id=snapshot.slot.id)
            completed.append(snapshot.slot.id)
            logger.info("Auto-confirmed learner attendance for slot %s", snapshot.slot.id,
                        extra={"slot_id": snapshot.slot.id})
        return completed
