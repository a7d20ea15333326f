from datetime import timedelta

from booking_attendance.auth import User
from booking_attendance.models import attendance_records
from booking_attendance.projection import INVARIANT_VIOLATION
from booking_attendance.reporting import SlotReport

from conftest import LEARNER, START, TUTOR

OTHER_TUTOR = User(id=5, username="other-tutor", role="tutor")


async def test_counts_follow_the_projection(db, tracker, coordinator, make_slot, proof):
    confirmed = (await make_slot()).slot
    await tracker.record_attendance(confirmed.id, TUTOR, await proof(TUTOR))
    disputed = (await make_slot()).slot
    await coordinator.file_dispute(disputed.id, LEARNER, "no-show", await proof(LEARNER))
    await make_slot()
    await make_slot(tutor=OTHER_TUTOR)

    report = SlotReport(db)
    assert await report.status_counts() == {
        "TUTOR_CONFIRMED": 1,
        "DISPUTE_AWAITING_TUTOR": 1,
        "AWAITING_ATTENDANCE": 2,
    }
    assert await report.status_counts(tutor_id=OTHER_TUTOR.id) == {"AWAITING_ATTENDANCE": 1}
    assert await report.counts_by_tutor() == {
        TUTOR.id: {"TUTOR_CONFIRMED": 1, "DISPUTE_AWAITING_TUTOR": 1, "AWAITING_ATTENDANCE": 1},
        OTHER_TUTOR.id: {"AWAITING_ATTENDANCE": 1},
    }


async def test_date_range(db, make_slot):
    await make_slot()
    later = START + timedelta(days=3)
    await make_slot(start=later, end=later + timedelta(hours=1))

    report = SlotReport(db)
    assert await report.status_counts(start=START + timedelta(days=1)) == {"AWAITING_ATTENDANCE": 1}
    assert await report.status_counts(end=START + timedelta(days=1)) == {"AWAITING_ATTENDANCE": 1}
    assert await report.status_counts(start=later + timedelta(days=1)) == {}


async def test_broken_slots_are_counted_as_violations(db, make_slot):
    broken = (await make_slot()).slot
    await make_slot()
    await db.execute(
        attendance_records.update()
        .where(attendance_records.c.slot_id == broken.id, attendance_records.c.party == "learner")
        .values(attended=False)
    )
    assert await SlotReport(db).status_counts() == {INVARIANT_VIOLATION: 1, "AWAITING_ATTENDANCE": 1}
