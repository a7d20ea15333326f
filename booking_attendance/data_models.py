# data_models.py
from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class SlotStatus(str, Enum):
    AVAILABLE = "Available"
    BOOKED = "Booked"
    PAID = "Paid"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"


class DisputeStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    RESOLVED = "RESOLVED"


OPEN_DISPUTE_STATUSES = (DisputeStatus.PENDING, DisputeStatus.SUBMITTED)


class DisputeState(str, Enum):
    """Authoritative state of a slot's dispute protocol, stored on the slot row."""
    NO_DISPUTE = "NoDispute"
    AWAITING_TUTOR = "Disputed_AwaitingTutor"
    TUTOR_CONTESTED = "Disputed_TutorContested"
    TUTOR_AGREED_REFUND = "Disputed_TutorAgreedRefund"
    RESOLVED_REFUNDED = "Resolved_Refunded"
    RESOLVED_REJECTED = "Resolved_Rejected"
    CANCELLED_BY_RESCHEDULE = "Cancelled_ByTutorReschedule"


class Party(str, Enum):
    TUTOR = "tutor"
    LEARNER = "learner"


class TutorResponse(str, Enum):
    CONTESTED = "CONTESTED"
    AGREED_REFUND = "AGREED_REFUND"


class Outcome(str, Enum):
    REFUND = "REFUND"
    DENY = "DENY"


class RejectionCause(str, Enum):
    DISPUTED = "disputed"
    RESCHEDULE = "reschedule"


class RecordedBy(str, Enum):
    PARTY = "party"
    ADMIN = "admin"
    SYSTEM = "system"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_or_none(enum_cls, value):
    return enum_cls(value) if value is not None else None


@dataclass
class BookedSlot:
    """A single paid (or payable) session between a tutor and a learner."""
    id: int
    booking_plan_id: Optional[int]
    tutor_id: int
    learner_id: Optional[int]
    start_time: datetime
    end_time: datetime
    status: SlotStatus
    meeting_url: Optional[str] = None
    payment_id: Optional[str] = None
    dispute_state: DisputeState = DisputeState.NO_DISPUTE
    rejection_cause: Optional[RejectionCause] = None
    quarantined_at: Optional[datetime] = None
    quarantine_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BookedSlot":
        return cls(
            id=row["id"],
            booking_plan_id=row["booking_plan_id"],
            tutor_id=row["tutor_id"],
            learner_id=row["learner_id"],
            start_time=as_utc(row["start_time"]),
            end_time=as_utc(row["end_time"]),
            status=SlotStatus(row["status"]),
            meeting_url=row["meeting_url"],
            payment_id=row["payment_id"],
            dispute_state=DisputeState(row["dispute_state"] or DisputeState.NO_DISPUTE.value),
            rejection_cause=_enum_or_none(RejectionCause, row["rejection_cause"]),
            quarantined_at=as_utc(row["quarantined_at"]),
            quarantine_reason=row["quarantine_reason"],
            archived_at=as_utc(row["archived_at"]),
            version=row["version"] or 0,
        )

    @property
    def quarantined(self) -> bool:
        return self.quarantined_at is not None

    def party_of(self, user_id: int) -> Optional[Party]:
        if user_id == self.tutor_id:
            return Party.TUTOR
        if self.learner_id is not None and user_id == self.learner_id:
            return Party.LEARNER
        return None


@dataclass
class AttendanceRecord:
    """One party's attendance claim for a slot."""
    slot_id: int
    party: Party
    attended: Optional[bool] = None
    evidence_ref: Optional[str] = None
    responded_at: Optional[datetime] = None
    recorded_by: Optional[RecordedBy] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AttendanceRecord":
        return cls(
            id=row["id"],
            slot_id=row["slot_id"],
            party=Party(row["party"]),
            attended=row["attended"],
            evidence_ref=row["evidence_ref"],
            responded_at=as_utc(row["responded_at"]),
            recorded_by=_enum_or_none(RecordedBy, row["recorded_by"]),
        )

    @property
    def is_blank(self) -> bool:
        return self.attended is None and self.evidence_ref is None and self.responded_at is None


@dataclass
class DisputeCase:
    """A learner's claim that the tutor did not attend a paid slot."""
    id: int
    slot_id: int
    learner_id: int
    reason: str
    learner_evidence_ref: Optional[str]
    status: DisputeStatus
    created_at: datetime
    tutor_response: Optional[TutorResponse] = None
    tutor_evidence_ref: Optional[str] = None
    tutor_responded_at: Optional[datetime] = None
    outcome: Optional[Outcome] = None
    admin_note: Optional[str] = None
    decided_by: Optional[int] = None
    forced: bool = False
    resolved_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DisputeCase":
        return cls(
            id=row["id"],
            slot_id=row["slot_id"],
            learner_id=row["learner_id"],
            reason=row["reason"],
            learner_evidence_ref=row["learner_evidence_ref"],
            status=DisputeStatus(row["status"]),
            created_at=as_utc(row["created_at"]),
            tutor_response=_enum_or_none(TutorResponse, row["tutor_response"]),
            tutor_evidence_ref=row["tutor_evidence_ref"],
            tutor_responded_at=as_utc(row["tutor_responded_at"]),
            outcome=_enum_or_none(Outcome, row["outcome"]),
            admin_note=row["admin_note"],
            decided_by=row["decided_by"],
            forced=bool(row["forced"]),
            resolved_at=as_utc(row["resolved_at"]),
            version=row["version"] or 0,
        )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES


@dataclass
class EvidenceAsset:
    """Immutable reference to an uploaded proof artifact."""
    ref: str
    owner_id: int
    view_url: str
    download_url: str
    size_bytes: int
    mime_type: str
    created_at: datetime
    slot_id: Optional[int] = None
    party: Optional[Party] = None
    attached_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EvidenceAsset":
        return cls(
            ref=row["id"],
            owner_id=row["owner_id"],
            view_url=row["view_url"],
            download_url=row["download_url"],
            size_bytes=row["size_bytes"],
            mime_type=row["mime_type"],
            created_at=as_utc(row["created_at"]),
            slot_id=row["slot_id"],
            party=_enum_or_none(Party, row["party"]),
            attached_at=as_utc(row["attached_at"]),
        )


@dataclass
class SlotSnapshot:
    """Everything the projection needs to know about one slot, read together."""
    slot: BookedSlot
    learner: Optional[AttendanceRecord] = None
    tutor: Optional[AttendanceRecord] = None
    dispute: Optional[DisputeCase] = None

    def record_for(self, party: Party) -> Optional[AttendanceRecord]:
        return self.tutor if party is Party.TUTOR else self.learner

    @property
    def open_dispute(self) -> Optional[DisputeCase]:
        if self.dispute is not None and self.dispute.is_open:
            return self.dispute
        return None


@dataclass
class AvailabilityWindow:
    """Weekly recurring window (weekday 0=Monday, UTC times) in which a tutor teaches."""
    weekday: int
    start_time: time
    end_time: time

    def covers(self, start: datetime, end: datetime) -> bool:
        if start.weekday() != self.weekday or end.date() != start.date():
            return False
        return self.start_time <= start.time() and end.time() <= self.end_time
