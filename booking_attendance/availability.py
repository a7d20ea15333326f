# availability.py
"""
Recurring availability of a booking plan.

Replacing a plan's weekly windows is how a tutor reschedules. Any slot of the
plan that has not started and no longer fits a window is cancelled: paid ones
are rejected and refunded (cause `reschedule`), unpaid ones simply cancelled.
"""
import logging
from typing import Dict, List

import sqlalchemy
from databases import Database

from booking_attendance.data_models import AvailabilityWindow, DisputeState, SlotStatus
from booking_attendance.disputes import DisputeCoordinator
from booking_attendance.errors import BookingError, InvalidTransition, NotAuthorized
from booking_attendance.models import availability_windows, booked_slots

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = (SlotStatus.AVAILABLE, SlotStatus.BOOKED, SlotStatus.PAID)


class AvailabilityEditor:
    """Replaces a booking plan's weekly windows on behalf of its tutor."""

    def __init__(self, db: Database, coordinator: DisputeCoordinator):
        self.db = db
        self.coordinator = coordinator

    async def windows_for(self, booking_plan_id: int) -> List[AvailabilityWindow]:
        rows = await self.db.fetch_all(
            availability_windows.select()
            .where(availability_windows.c.booking_plan_id == booking_plan_id)
            .order_by(availability_windows.c.weekday, availability_windows.c.start_time)
        )
        return [AvailabilityWindow(row["weekday"], row["start_time"], row["end_time"]) for row in rows]

    async def _require_plan_tutor(self, booking_plan_id: int, tutor) -> None:
        owners = set()
        for table in (availability_windows, booked_slots):
            rows = await self.db.fetch_all(
                sqlalchemy.select(table.c.tutor_id).distinct().where(table.c.booking_plan_id == booking_plan_id)
            )
            owners.update(row["tutor_id"] for row in rows)
        if owners - {tutor.id}:
            raise NotAuthorized(f"Booking plan {booking_plan_id} belongs to another tutor.",
                                booking_plan_id=booking_plan_id)

    async def apply_availability(self, booking_plan_id: int, tutor, windows: List[AvailabilityWindow]) -> Dict:
        """Replace the plan's windows and cancel the upcoming slots they no longer cover."""
        for window in windows:
            if not 0 <= window.weekday <= 6 or window.start_time >= window.end_time:
                raise InvalidTransition(
                    f"Invalid availability window {window.weekday} {window.start_time}-{window.end_time}."
                )
        await self._require_plan_tutor(booking_plan_id, tutor)

        async with self.db.transaction():
            await self.db.execute(
                availability_windows.delete().where(availability_windows.c.booking_plan_id == booking_plan_id)
            )
            for window in windows:
                await self.db.execute(availability_windows.insert().values(
                    booking_plan_id=booking_plan_id,
                    tutor_id=tutor.id,
                    weekday=window.weekday,
                    start_time=window.start_time,
                    end_time=window.end_time,
                ))

        now = self.coordinator.guard.now()
        upcoming = await self.coordinator.slots.load_snapshots(
            booked_slots.select()
            .where(
                booked_slots.c.booking_plan_id == booking_plan_id,
                booked_slots.c.start_time > now,
                booked_slots.c.status.in_([s.value for s in RESCHEDULABLE_STATUSES]),
                booked_slots.c.dispute_state == DisputeState.NO_DISPUTE.value,
            )
            .order_by(booked_slots.c.start_time)
        )
        cancelled, skipped = [], []
        for snapshot in upcoming:
            slot = snapshot.slot
            if any(window.covers(slot.start_time, slot.end_time) for window in windows):
                continue
            try:
                await self.coordinator.cancel_for_reschedule(slot.id, tutor)
            except BookingError as e:
                logger.warning("Could not cancel slot %s of plan %s: %s", slot.id, booking_plan_id, e.detail,
                               extra={"slot_id": slot.id, "booking_plan_id": booking_plan_id, "code": e.code})
                skipped.append(slot.id)
                continue
            cancelled.append(slot.id)

        logger.info("Availability of plan %s replaced with %d window(s); cancelled slots %s, skipped %s",
                    booking_plan_id, len(windows), cancelled, skipped,
                    extra={"booking_plan_id": booking_plan_id, "cancelled": cancelled, "skipped": skipped})
        return {"booking_plan_id": booking_plan_id, "windows": windows, "cancelled": cancelled, "skipped": skipped}
