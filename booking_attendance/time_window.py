# time_window.py
from datetime import datetime, timezone
from typing import Callable, Optional

from booking_attendance.data_models import BookedSlot, as_utc
from booking_attendance.errors import OutsideTimeWindow


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_actionable(slot: BookedSlot, now: datetime) -> bool:
    """True while the session is running: start_time <= now <= end_time."""
    now = as_utc(now)
    return slot.start_time <= now <= slot.end_time


class TimeWindowGuard:
    """
    Gatekeeper for party actions on a slot.

    The guard owns the server clock; client-reported times are never consulted.
    Tests pass their own clock.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def now(self) -> datetime:
        return as_utc(self.clock())

    def is_actionable(self, slot: BookedSlot, now: Optional[datetime] = None) -> bool:
        return is_actionable(slot, now or self.now())

    def require_actionable(self, slot: BookedSlot, now: Optional[datetime] = None) -> datetime:
        now = now or self.now()
        if not is_actionable(slot, now):
            raise OutsideTimeWindow(
                f"Slot {slot.id} can only be acted on between "
                f"{slot.start_time.isoformat()} and {slot.end_time.isoformat()}.",
                slot_id=slot.id,
            )
        return now

    def is_upcoming(self, slot: BookedSlot, now: Optional[datetime] = None) -> bool:
        return as_utc(now or self.now()) < slot.start_time

    def is_overdue(self, slot: BookedSlot, now: Optional[datetime] = None) -> bool:
        return as_utc(now or self.now()) > slot.end_time
