# reporting.py
import logging
from collections import Counter, defaultdict
from datetime import datetime
from typing import Dict, Optional

from databases import Database

from booking_attendance.errors import InvariantViolation
from booking_attendance.models import booked_slots
from booking_attendance.projection import INVARIANT_VIOLATION, project
from booking_attendance.slots import SlotLedger

logger = logging.getLogger(__name__)


class SlotReport:
    """Dashboard counts. Every slot is labelled by the projection, never re-derived here."""

    def __init__(self, db: Database):
        self.slots = SlotLedger(db)

    async def _labelled(self, tutor_id: Optional[int], start: Optional[datetime], end: Optional[datetime]):
        query = booked_slots.select()
        if tutor_id is not None:
            query = query.where(booked_slots.c.tutor_id == tutor_id)
        if start is not None:
            query = query.where(booked_slots.c.start_time >= start)
        if end is not None:
            query = query.where(booked_slots.c.start_time < end)
        for snapshot in await self.slots.load_snapshots(query.order_by(booked_slots.c.id)):
            try:
                label = project(snapshot).value
            except InvariantViolation:
                label = INVARIANT_VIOLATION
            yield snapshot.slot, label

    async def status_counts(self, tutor_id: Optional[int] = None, start: Optional[datetime] = None,
                            end: Optional[datetime] = None) -> Dict[str, int]:
        counts = Counter()
        async for _, label in self._labelled(tutor_id, start, end):
            counts[label] += 1
        return dict(counts)

    async def counts_by_tutor(self, start: Optional[datetime] = None,
                              end: Optional[datetime] = None) -> Dict[int, Dict[str, int]]:
        per_tutor = defaultdict(Counter)
        async for slot, label in self._labelled(None, start, end):
            per_tutor[slot.tutor_id][label] += 1
        return {tutor_id: dict(counts) for tutor_id, counts in per_tutor.items()}
