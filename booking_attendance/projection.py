# projection.py
"""
Canonical status of a slot.

`project` is the only place that interprets the stored flags (slot status,
rejection cause, dispute state, both attendance records, the dispute case).
API views, reports and pushes all go through it. Flag combinations the state
machine cannot produce raise InvariantViolation instead of being rendered as
some plausible-looking status.
"""
import logging
from enum import Enum
from typing import List, Optional, Tuple

from booking_attendance.data_models import (
    AttendanceRecord,
    DisputeState,
    DisputeStatus,
    Outcome,
    RejectionCause,
    SlotSnapshot,
    SlotStatus,
    TutorResponse,
)
from booking_attendance.errors import InvariantViolation

logger = logging.getLogger(__name__)


class CanonicalStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    AWAITING_ATTENDANCE = "AWAITING_ATTENDANCE"
    LEARNER_CONFIRMED = "LEARNER_CONFIRMED"
    TUTOR_CONFIRMED = "TUTOR_CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTE_AWAITING_TUTOR = "DISPUTE_AWAITING_TUTOR"
    DISPUTE_TUTOR_CONTESTED = "DISPUTE_TUTOR_CONTESTED"
    DISPUTE_TUTOR_AGREED_REFUND = "DISPUTE_TUTOR_AGREED_REFUND"
    REFUNDED_AFTER_DISPUTE = "REFUNDED_AFTER_DISPUTE"
    DISPUTE_DENIED = "DISPUTE_DENIED"
    CANCELLED_BY_RESCHEDULE = "CANCELLED_BY_RESCHEDULE"


# Reporting bucket for slots whose flags cannot be projected
INVARIANT_VIOLATION = "INVARIANT_VIOLATION"


def _attended(record: Optional[AttendanceRecord]) -> Optional[bool]:
    return record.attended if record is not None else None


def _evidence(record: Optional[AttendanceRecord]) -> Optional[str]:
    return record.evidence_ref if record is not None else None


def _blank(record: Optional[AttendanceRecord]) -> bool:
    return record is None or record.is_blank


def _check_records(snapshot: SlotSnapshot, problems: List[str]) -> None:
    for record in (snapshot.learner, snapshot.tutor):
        if record is None:
            continue
        if record.attended is None and record.evidence_ref is not None:
            problems.append(f"{record.party.value} evidence attached without an attendance claim")
    if _attended(snapshot.learner) is False:
        problems.append("learner attendance can never be set to false")
    tutor_false = _attended(snapshot.tutor) is False
    agreed = snapshot.dispute is not None and snapshot.dispute.tutor_response is TutorResponse.AGREED_REFUND
    if tutor_false and not agreed:
        problems.append("tutor attendance is false without an agreed refund")


def _project_dispute(snapshot: SlotSnapshot, problems: List[str]) -> Tuple[CanonicalStatus, DisputeState]:
    slot, dispute = snapshot.slot, snapshot.dispute
    if not (dispute.reason or "").strip():
        problems.append("dispute has no reason")
    if not dispute.learner_evidence_ref:
        problems.append("dispute has no learner evidence")

    if dispute.is_open:
        if slot.status is not SlotStatus.PAID:
            problems.append(f"open dispute on a {slot.status.value} slot")
        if _attended(snapshot.learner) is True:
            problems.append("open dispute although the learner confirmed attendance")
        if _attended(snapshot.learner) is True and _attended(snapshot.tutor) is True:
            problems.append("both parties attended while an open dispute exists")
        if dispute.outcome is not None:
            problems.append("open dispute already carries an outcome")

        if dispute.tutor_response is None:
            if dispute.status is not DisputeStatus.PENDING:
                problems.append("submitted dispute without a tutor response")
            if not _blank(snapshot.tutor):
                problems.append("tutor attendance recorded while the dispute awaits the tutor")
            return CanonicalStatus.DISPUTE_AWAITING_TUTOR, DisputeState.AWAITING_TUTOR

        if dispute.status is not DisputeStatus.SUBMITTED:
            problems.append("tutor responded but the dispute is still pending")
        if dispute.tutor_response is TutorResponse.CONTESTED:
            if _attended(snapshot.tutor) is not True:
                problems.append("contested dispute without tutor attendance")
            if not dispute.tutor_evidence_ref or dispute.tutor_evidence_ref != _evidence(snapshot.tutor):
                problems.append("contested dispute without matching tutor evidence")
            return CanonicalStatus.DISPUTE_TUTOR_CONTESTED, DisputeState.TUTOR_CONTESTED

        if _attended(snapshot.tutor) is not False:
            problems.append("agreed refund but tutor attendance is not false")
        if dispute.tutor_evidence_ref or _evidence(snapshot.tutor):
            problems.append("agreed refund carries tutor evidence")
        return CanonicalStatus.DISPUTE_TUTOR_AGREED_REFUND, DisputeState.TUTOR_AGREED_REFUND

    # resolved
    if dispute.outcome is None:
        problems.append("resolved dispute without an outcome")
        return CanonicalStatus.DISPUTE_DENIED, DisputeState.RESOLVED_REJECTED
    if dispute.outcome is Outcome.REFUND:
        if slot.status is not SlotStatus.REJECTED or slot.rejection_cause is not RejectionCause.DISPUTED:
            problems.append("refunded dispute but the slot is not rejected as disputed")
        return CanonicalStatus.REFUNDED_AFTER_DISPUTE, DisputeState.RESOLVED_REFUNDED

    if slot.status not in (SlotStatus.PAID, SlotStatus.COMPLETED):
        problems.append(f"denied dispute on a {slot.status.value} slot")
    if _attended(snapshot.learner) is not True:
        problems.append("denied dispute without admin-confirmed learner attendance")
    if slot.status is SlotStatus.COMPLETED and _attended(snapshot.tutor) is not True:
        problems.append("completed slot without tutor attendance")
    return CanonicalStatus.DISPUTE_DENIED, DisputeState.RESOLVED_REJECTED


def _project_plain(snapshot: SlotSnapshot, problems: List[str]) -> Tuple[CanonicalStatus, DisputeState]:
    slot = snapshot.slot
    learner, tutor = _attended(snapshot.learner), _attended(snapshot.tutor)

    if slot.status is SlotStatus.REJECTED:
        if slot.rejection_cause is RejectionCause.RESCHEDULE:
            if not (_blank(snapshot.learner) and _blank(snapshot.tutor)):
                problems.append("reschedule cancellation carries attendance or evidence")
            return CanonicalStatus.CANCELLED_BY_RESCHEDULE, DisputeState.CANCELLED_BY_RESCHEDULE
        problems.append("rejected slot without a reschedule or a refunded dispute")
        return CanonicalStatus.CANCELLED_BY_RESCHEDULE, DisputeState.CANCELLED_BY_RESCHEDULE

    if slot.rejection_cause is not None:
        problems.append(f"{slot.status.value} slot carries a rejection cause")

    if slot.status in (SlotStatus.AVAILABLE, SlotStatus.BOOKED, SlotStatus.CANCELLED):
        if not (_blank(snapshot.learner) and _blank(snapshot.tutor)):
            problems.append(f"{slot.status.value} slot carries attendance")
        label = {
            SlotStatus.AVAILABLE: CanonicalStatus.AVAILABLE,
            SlotStatus.BOOKED: CanonicalStatus.BOOKED,
            SlotStatus.CANCELLED: CanonicalStatus.CANCELLED,
        }[slot.status]
        return label, DisputeState.NO_DISPUTE

    if slot.status is SlotStatus.COMPLETED:
        if not (learner is True and tutor is True):
            problems.append("completed slot without both attendances")
        return CanonicalStatus.COMPLETED, DisputeState.NO_DISPUTE

    # Paid
    if learner is True and tutor is True:
        problems.append("both parties attended but the slot was not completed")
        return CanonicalStatus.COMPLETED, DisputeState.NO_DISPUTE
    if learner is True:
        return CanonicalStatus.LEARNER_CONFIRMED, DisputeState.NO_DISPUTE
    if tutor is True:
        return CanonicalStatus.TUTOR_CONFIRMED, DisputeState.NO_DISPUTE
    return CanonicalStatus.AWAITING_ATTENDANCE, DisputeState.NO_DISPUTE


def find_violations(snapshot: SlotSnapshot) -> Tuple[CanonicalStatus, List[str]]:
    """Project without raising; returns the label and every problem found."""
    problems: List[str] = []
    _check_records(snapshot, problems)
    if snapshot.dispute is not None:
        label, expected_state = _project_dispute(snapshot, problems)
    else:
        label, expected_state = _project_plain(snapshot, problems)
    if snapshot.slot.dispute_state is not expected_state:
        problems.append(
            f"stored state {snapshot.slot.dispute_state.value} does not match flags ({expected_state.value})"
        )
    return label, problems


def project(snapshot: SlotSnapshot) -> CanonicalStatus:
    """Map a slot snapshot to its one canonical status, or raise InvariantViolation."""
    label, problems = find_violations(snapshot)
    if problems:
        logger.critical(
            "Slot %s violates protocol invariants: %s", snapshot.slot.id, "; ".join(problems),
            extra={"slot_id": snapshot.slot.id, "problems": problems},
        )
        raise InvariantViolation(
            f"Slot {snapshot.slot.id} is in an unreachable state.",
            problems=problems,
            slot_id=snapshot.slot.id,
        )
    return label
