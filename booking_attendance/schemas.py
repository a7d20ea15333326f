# schemas.py
from datetime import datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_attendance.data_models import (
    AttendanceRecord,
    AvailabilityWindow,
    DisputeCase,
    EvidenceAsset,
    Outcome,
    SlotSnapshot,
)
from booking_attendance.errors import InvariantViolation
from booking_attendance.projection import INVARIANT_VIOLATION, project


# Requests

class SlotCreate(BaseModel):
    tutor_id: int
    learner_id: int
    start_time: datetime
    end_time: datetime
    booking_plan_id: Optional[int] = None
    meeting_url: Optional[str] = None
    payment_id: Optional[str] = None

    @model_validator(mode="after")
    def ends_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AttendanceRequest(BaseModel):
    evidence_ref: str


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    evidence_ref: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason must not be blank")
        return value.strip()


class ContestRequest(BaseModel):
    evidence_ref: str


class DecisionRequest(BaseModel):
    outcome: Outcome
    note: Optional[str] = None


class AvailabilityWindowIn(BaseModel):
    weekday: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def ends_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def to_window(self) -> AvailabilityWindow:
        return AvailabilityWindow(self.weekday, self.start_time, self.end_time)


class AvailabilityUpdate(BaseModel):
    windows: List[AvailabilityWindowIn]


# Responses

class EvidenceOut(BaseModel):
    evidence_ref: str
    view_url: str
    download_url: str
    size_bytes: int
    mime_type: str
    created_at: datetime


class AttendanceView(BaseModel):
    attended: Optional[bool] = None
    evidence_ref: Optional[str] = None
    responded_at: Optional[datetime] = None
    recorded_by: Optional[str] = None


class DisputeView(BaseModel):
    id: int
    reason: str
    status: str
    learner_evidence_ref: Optional[str] = None
    tutor_response: Optional[str] = None
    tutor_evidence_ref: Optional[str] = None
    tutor_responded_at: Optional[datetime] = None
    outcome: Optional[str] = None
    admin_note: Optional[str] = None
    forced: bool = False
    created_at: datetime
    resolved_at: Optional[datetime] = None


class SlotView(BaseModel):
    id: int
    booking_plan_id: Optional[int] = None
    tutor_id: int
    learner_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    status: str
    dispute_state: str
    rejection_cause: Optional[str] = None
    canonical_status: str
    violations: List[str] = []
    quarantined: bool = False
    meeting_url: Optional[str] = None
    learner: Optional[AttendanceView] = None
    tutor: Optional[AttendanceView] = None
    dispute: Optional[DisputeView] = None


class AvailabilityOut(BaseModel):
    booking_plan_id: int
    windows: List[AvailabilityWindowIn]
    cancelled: List[int]
    skipped: List[int] = []


class SlotReportOut(BaseModel):
    counts: Dict[str, int]
    by_tutor: Optional[Dict[int, Dict[str, int]]] = None


def evidence_out(asset: EvidenceAsset) -> EvidenceOut:
    return EvidenceOut(
        evidence_ref=asset.ref,
        view_url=asset.view_url,
        download_url=asset.download_url,
        size_bytes=asset.size_bytes,
        mime_type=asset.mime_type,
        created_at=asset.created_at,
    )


def _attendance_view(record: Optional[AttendanceRecord]) -> Optional[AttendanceView]:
    if record is None:
        return None
    return AttendanceView(
        attended=record.attended,
        evidence_ref=record.evidence_ref,
        responded_at=record.responded_at,
        recorded_by=record.recorded_by.value if record.recorded_by else None,
    )


def _dispute_view(dispute: Optional[DisputeCase]) -> Optional[DisputeView]:
    if dispute is None:
        return None
    return DisputeView(
        id=dispute.id,
        reason=dispute.reason,
        status=dispute.status.value,
        learner_evidence_ref=dispute.learner_evidence_ref,
        tutor_response=dispute.tutor_response.value if dispute.tutor_response else None,
        tutor_evidence_ref=dispute.tutor_evidence_ref,
        tutor_responded_at=dispute.tutor_responded_at,
        outcome=dispute.outcome.value if dispute.outcome else None,
        admin_note=dispute.admin_note,
        forced=dispute.forced,
        created_at=dispute.created_at,
        resolved_at=dispute.resolved_at,
    )


def slot_view(snapshot: SlotSnapshot) -> SlotView:
    """Render a slot for any reader; the label always comes from the projection."""
    try:
        canonical, violations = project(snapshot).value, []
    except InvariantViolation as e:
        canonical, violations = INVARIANT_VIOLATION, e.problems
    slot = snapshot.slot
    return SlotView(
        id=slot.id,
        booking_plan_id=slot.booking_plan_id,
        tutor_id=slot.tutor_id,
        learner_id=slot.learner_id,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=slot.status.value,
        dispute_state=slot.dispute_state.value,
        rejection_cause=slot.rejection_cause.value if slot.rejection_cause else None,
        canonical_status=canonical,
        violations=violations,
        quarantined=slot.quarantined,
        meeting_url=slot.meeting_url,
        learner=_attendance_view(snapshot.learner),
        tutor=_attendance_view(snapshot.tutor),
        dispute=_dispute_view(snapshot.dispute),
    )
