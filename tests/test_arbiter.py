import asyncio
from datetime import timedelta

import pytest

from booking_attendance.data_models import (
    DisputeState,
    DisputeStatus,
    Outcome,
    RecordedBy,
    SlotStatus,
)
from booking_attendance.errors import AlreadyResponded, InvalidTransition, InvariantViolation, NotAuthorized
from booking_attendance.models import attendance_records
from booking_attendance.projection import CanonicalStatus, project

from conftest import ADMIN, END, LEARNER, TUTOR


@pytest.fixture
async def filed(coordinator, paid_slot, proof):
    return await coordinator.file_dispute(paid_slot.id, LEARNER, "no-show", await proof(LEARNER))


async def test_pending_case_waits_for_the_tutor(arbiter, filed):
    with pytest.raises(InvalidTransition):
        await arbiter.decide(filed.dispute.id, ADMIN, Outcome.REFUND)


async def test_only_admin_decides(arbiter, coordinator, filed):
    await coordinator.agree_refund(filed.dispute.id, TUTOR)
    for user in (LEARNER, TUTOR):
        with pytest.raises(NotAuthorized):
            await arbiter.decide(filed.dispute.id, user, Outcome.REFUND)


async def test_decision_is_final(arbiter, coordinator, filed):
    await coordinator.agree_refund(filed.dispute.id, TUTOR)
    await arbiter.decide(filed.dispute.id, ADMIN, "REFUND")
    with pytest.raises(AlreadyResponded):
        await arbiter.decide(filed.dispute.id, ADMIN, Outcome.DENY)


async def test_concurrent_decisions_have_one_winner(arbiter, coordinator, ledger, filed):
    await coordinator.agree_refund(filed.dispute.id, TUTOR)
    results = await asyncio.gather(
        arbiter.decide(filed.dispute.id, ADMIN, Outcome.REFUND),
        arbiter.decide(filed.dispute.id, ADMIN, Outcome.DENY),
        return_exceptions=True,
    )
    assert sum(isinstance(r, AlreadyResponded) for r in results) == 1
    [winner] = [r for r in results if not isinstance(r, Exception)]
    assert winner.dispute.status is DisputeStatus.RESOLVED
    assert len(await ledger.pending()) == (1 if winner.dispute.outcome is Outcome.REFUND else 0)


async def test_forced_denial_of_overdue_case(arbiter, filed, clock):
    clock.now = END + timedelta(hours=2)
    assert [s.dispute.id for s in await arbiter.overdue_disputes()] == [filed.dispute.id]

    decided = await arbiter.decide(filed.dispute.id, ADMIN, Outcome.DENY, "learner joined per logs")
    assert decided.dispute.forced is True
    assert decided.slot.status is SlotStatus.PAID
    assert decided.slot.dispute_state is DisputeState.RESOLVED_REJECTED
    assert decided.learner.attended is True
    assert decided.learner.recorded_by is RecordedBy.ADMIN
    assert decided.tutor.attended is None
    assert project(decided) is CanonicalStatus.DISPUTE_DENIED
    assert await arbiter.overdue_disputes() == []


async def test_forced_refund_of_overdue_case(arbiter, ledger, filed, clock):
    clock.now = END + timedelta(minutes=1)
    decided = await arbiter.decide(filed.dispute.id, ADMIN, Outcome.REFUND)
    assert decided.dispute.forced is True
    assert project(decided) is CanonicalStatus.REFUNDED_AFTER_DISPUTE
    assert [r["cause"] for r in await ledger.pending()] == ["disputed"]


async def test_open_disputes_by_status(arbiter, coordinator, filed, make_slot, proof):
    other = (await make_slot()).slot
    second = await coordinator.file_dispute(other.id, LEARNER, "no-show", await proof(LEARNER))
    await coordinator.agree_refund(second.dispute.id, TUTOR)

    assert {s.slot.id for s in await arbiter.open_disputes()} == {filed.slot.id, other.id}
    assert [s.slot.id for s in await arbiter.open_disputes([DisputeStatus.SUBMITTED])] == [other.id]


async def test_broken_slot_is_quarantined_until_repaired(db, arbiter, tracker, paid_slot, proof, slot_ledger):
    learner_record = attendance_records.c.party == "learner"
    await db.execute(
        attendance_records.update()
        .where(attendance_records.c.slot_id == paid_slot.id, learner_record)
        .values(attended=False)
    )

    with pytest.raises(InvariantViolation) as excinfo:
        await tracker.record_attendance(paid_slot.id, TUTOR, await proof(TUTOR))
    assert "learner attendance can never be set to false" in excinfo.value.problems
    held = await slot_ledger.get_slot(paid_slot.id)
    assert held.quarantined

    with pytest.raises(InvariantViolation):
        await tracker.record_attendance(paid_slot.id, TUTOR, await proof(TUTOR))
    with pytest.raises(InvariantViolation):
        await arbiter.release_quarantine(paid_slot.id, ADMIN)

    await db.execute(
        attendance_records.update()
        .where(attendance_records.c.slot_id == paid_slot.id, learner_record)
        .values(attended=None)
    )
    with pytest.raises(NotAuthorized):
        await arbiter.release_quarantine(paid_slot.id, TUTOR)
    released = await arbiter.release_quarantine(paid_slot.id, ADMIN)
    assert not released.slot.quarantined

    snapshot = await tracker.record_attendance(paid_slot.id, TUTOR, await proof(TUTOR))
    assert project(snapshot) is CanonicalStatus.TUTOR_CONFIRMED


async def test_release_requires_a_quarantined_slot(arbiter, paid_slot):
    with pytest.raises(InvalidTransition):
        await arbiter.release_quarantine(paid_slot.id, ADMIN)
