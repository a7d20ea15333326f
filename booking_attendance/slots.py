# slots.py
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import sqlalchemy
from databases import Database

from booking_attendance.data_models import (
    AttendanceRecord,
    BookedSlot,
    DisputeCase,
    DisputeState,
    DisputeStatus,
    Party,
    SlotSnapshot,
    SlotStatus,
    as_utc,
)
from booking_attendance.errors import InvalidTransition, InvariantViolation, NotAuthorized, NotFound
from booking_attendance.projection import find_violations
from booking_attendance.time_window import TimeWindowGuard
from booking_attendance.models import attendance_records, booked_slots, dispute_cases

logger = logging.getLogger(__name__)


def _expected_condition(column, value):
    if value is None:
        return column.is_(None)
    if isinstance(value, (list, tuple, set, frozenset)):
        return column.in_([getattr(v, "value", v) for v in value])
    return column == getattr(value, "value", value)


class SlotLedger:
    """Data access for slots, their attendance records and dispute cases."""

    def __init__(self, db: Database):
        self.db = db

    # ---- reads -------------------------------------------------------

    async def get_slot(self, slot_id: int) -> BookedSlot:
        row = await self.db.fetch_one(booked_slots.select().where(booked_slots.c.id == slot_id))
        if row is None:
            raise NotFound(f"Slot {slot_id} not found.", slot_id=slot_id)
        return BookedSlot.from_row(row)

    async def get_dispute(self, dispute_id: int) -> DisputeCase:
        row = await self.db.fetch_one(dispute_cases.select().where(dispute_cases.c.id == dispute_id))
        if row is None:
            raise NotFound(f"Dispute {dispute_id} not found.", dispute_id=dispute_id)
        return DisputeCase.from_row(row)

    async def load_snapshot(self, slot_id: int) -> SlotSnapshot:
        slot = await self.get_slot(slot_id)
        snapshots = await self._attach_children([slot])
        return snapshots[0]

    async def load_snapshots(self, query) -> List[SlotSnapshot]:
        rows = await self.db.fetch_all(query)
        return await self._attach_children([BookedSlot.from_row(row) for row in rows])

    async def _attach_children(self, slots: List[BookedSlot]) -> List[SlotSnapshot]:
        if not slots:
            return []
        ids = [slot.id for slot in slots]
        snapshots: Dict[int, SlotSnapshot] = {slot.id: SlotSnapshot(slot=slot) for slot in slots}

        record_rows = await self.db.fetch_all(
            attendance_records.select().where(attendance_records.c.slot_id.in_(ids))
        )
        for row in record_rows:
            record = AttendanceRecord.from_row(row)
            if record.party is Party.TUTOR:
                snapshots[record.slot_id].tutor = record
            else:
                snapshots[record.slot_id].learner = record

        dispute_rows = await self.db.fetch_all(dispute_cases.select().where(dispute_cases.c.slot_id.in_(ids)))
        for row in dispute_rows:
            dispute = DisputeCase.from_row(row)
            snapshots[dispute.slot_id].dispute = dispute

        return [snapshots[slot.id] for slot in slots]

    async def overdue_disputes(self, now: datetime) -> List[SlotSnapshot]:
        """PENDING disputes whose window has closed without a tutor response."""
        query = (
            booked_slots.select()
            .select_from(booked_slots.join(dispute_cases, dispute_cases.c.slot_id == booked_slots.c.id))
            .where(
                dispute_cases.c.status == DisputeStatus.PENDING.value,
                booked_slots.c.end_time < now,
            )
            .order_by(booked_slots.c.end_time)
        )
        return await self.load_snapshots(query)

    async def disputes_by_status(self, statuses: Iterable[str]) -> List[SlotSnapshot]:
        query = (
            booked_slots.select()
            .select_from(booked_slots.join(dispute_cases, dispute_cases.c.slot_id == booked_slots.c.id))
            .where(dispute_cases.c.status.in_(list(statuses)))
            .order_by(dispute_cases.c.created_at)
        )
        return await self.load_snapshots(query)

    # ---- writes ------------------------------------------------------

    async def create_paid_slot(self, *, tutor_id: int, learner_id: int, start_time: datetime,
                               end_time: datetime, now: datetime, booking_plan_id: Optional[int] = None,
                               meeting_url: Optional[str] = None,
                               payment_id: Optional[str] = None) -> SlotSnapshot:
        """Record a slot whose payment succeeded, with two empty attendance records."""
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            raise InvalidTransition("A slot must end after it starts.")
        async with self.db.transaction():
            slot_id = await self.db.execute(booked_slots.insert().values(
                booking_plan_id=booking_plan_id,
                tutor_id=tutor_id,
                learner_id=learner_id,
                start_time=start_time,
                end_time=end_time,
                status=SlotStatus.PAID.value,
                meeting_url=meeting_url,
                payment_id=payment_id,
                dispute_state=DisputeState.NO_DISPUTE.value,
                created_at=now,
                version=0,
            ))
            for party in (Party.TUTOR, Party.LEARNER):
                await self.db.execute(attendance_records.insert().values(
                    slot_id=slot_id, party=party.value, version=0,
                ))
        logger.info("Recorded paid slot %s (tutor=%s learner=%s)", slot_id, tutor_id, learner_id,
                    extra={"slot_id": slot_id})
        return await self.load_snapshot(slot_id)

    async def compare_and_set(self, table, row_id, expected: dict, values: dict) -> bool:
        """
        Conditional update: apply `values` only if every column in `expected`
        still holds its value. Returns True when this call's write is the one
        that landed.

        The row is stamped with a fresh write token and read back. Inside a
        transaction this must be the first statement.
        """
        token = uuid.uuid4().hex
        conditions = [table.c.id == row_id]
        conditions.extend(_expected_condition(table.c[column], value) for column, value in expected.items())
        values = {key: getattr(value, "value", value) for key, value in values.items()}
        await self.db.execute(
            table.update()
            .where(*conditions)
            .values(**values, version=table.c.version + 1, write_token=token)
        )
        winner = await self.db.fetch_val(sqlalchemy.select(table.c.write_token).where(table.c.id == row_id))
        return winner == token

    async def claim_slot(self, slot: BookedSlot, values: dict = None, **expected) -> bool:
        """CAS on the slot row keyed on the version this request read."""
        return await self.compare_and_set(
            booked_slots, slot.id, {"version": slot.version, **expected}, values or {}
        )

    async def set_attendance(self, slot_id: int, party: Party, values: dict, **expected) -> bool:
        record_id = await self.db.fetch_val(
            sqlalchemy.select(attendance_records.c.id).where(
                attendance_records.c.slot_id == slot_id,
                attendance_records.c.party == party.value,
            )
        )
        if record_id is None:
            raise NotFound(f"No {party.value} attendance record for slot {slot_id}.", slot_id=slot_id)
        return await self.compare_and_set(attendance_records, record_id, expected, values)

    async def set_dispute(self, dispute: DisputeCase, values: dict, **expected) -> bool:
        return await self.compare_and_set(
            dispute_cases, dispute.id, {"version": dispute.version, **expected}, values
        )

    async def insert_dispute(self, **values) -> int:
        values = {key: getattr(value, "value", value) for key, value in values.items()}
        return await self.db.execute(dispute_cases.insert().values(**values, version=0))

    async def quarantine(self, slot_id: int, reason: str, now: datetime) -> None:
        """Hold a slot for manual repair; no version check, this always lands."""
        await self.db.execute(
            booked_slots.update()
            .where(booked_slots.c.id == slot_id, booked_slots.c.quarantined_at.is_(None))
            .values(quarantined_at=now, quarantine_reason=reason, version=booked_slots.c.version + 1)
        )
        logger.critical("Slot %s quarantined: %s", slot_id, reason, extra={"slot_id": slot_id})

    async def release_quarantine(self, slot_id: int) -> None:
        await self.db.execute(
            booked_slots.update()
            .where(booked_slots.c.id == slot_id)
            .values(quarantined_at=None, quarantine_reason=None, version=booked_slots.c.version + 1)
        )


class SlotService:
    """Shared plumbing for the services that mutate slots."""

    def __init__(self, db: Database, guard: TimeWindowGuard):
        self.db = db
        self.guard = guard
        self.slots = SlotLedger(db)

    async def checked_snapshot(self, slot_id: int) -> SlotSnapshot:
        """
        Load a slot and refuse to act on it if it is quarantined or its flags
        no longer project; the latter quarantines it.
        """
        snapshot = await self.slots.load_snapshot(slot_id)
        if snapshot.slot.quarantined:
            raise InvariantViolation(
                f"Slot {slot_id} is held for manual repair: {snapshot.slot.quarantine_reason}",
                slot_id=slot_id,
            )
        _, problems = find_violations(snapshot)
        if problems:
            await self.slots.quarantine(slot_id, "; ".join(problems), self.guard.now())
            raise InvariantViolation(f"Slot {slot_id} is in an unreachable state.", problems=problems,
                                     slot_id=slot_id)
        return snapshot

    @staticmethod
    def require_party(slot: BookedSlot, user, party: Optional[Party] = None) -> Party:
        actual = slot.party_of(user.id)
        if actual is None or (party is not None and actual is not party):
            who = party.value if party is not None else "a party"
            raise NotAuthorized(f"Only {who} on slot {slot.id} can do this.", slot_id=slot.id)
        return actual
