# models.py
import sqlalchemy
from booking_attendance.database import metadata

#'users' table
users = sqlalchemy.Table(
    "users",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("username", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("full_name", sqlalchemy.String),
    sqlalchemy.Column("email", sqlalchemy.String, unique=True, index=True),
    sqlalchemy.Column("hashed_password", sqlalchemy.String),
    sqlalchemy.Column("role", sqlalchemy.String, default="learner"),
)

# One bookable session between a tutor and a learner
booked_slots = sqlalchemy.Table(
    "booked_slots",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("booking_plan_id", sqlalchemy.Integer, index=True),
    sqlalchemy.Column("tutor_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("learner_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), nullable=True),
    sqlalchemy.Column("start_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("end_time", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("status", sqlalchemy.String, default="Paid"),
    sqlalchemy.Column("meeting_url", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("payment_id", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("dispute_state", sqlalchemy.String, default="NoDispute"),
    sqlalchemy.Column("rejection_cause", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("quarantined_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("quarantine_reason", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("archived_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    # optimistic concurrency: every mutation bumps version and stamps its token
    sqlalchemy.Column("version", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("write_token", sqlalchemy.String, nullable=True),
)

attendance_records = sqlalchemy.Table(
    "attendance_records",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("slot_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("booked_slots.id"), index=True),
    sqlalchemy.Column("party", sqlalchemy.String),
    sqlalchemy.Column("attended", sqlalchemy.Boolean, nullable=True),
    sqlalchemy.Column("evidence_ref", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("responded_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("recorded_by", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("version", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("write_token", sqlalchemy.String, nullable=True),
    sqlalchemy.UniqueConstraint("slot_id", "party", name="uq_attendance_slot_party"),
)

dispute_cases = sqlalchemy.Table(
    "dispute_cases",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("slot_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("booked_slots.id"), unique=True),
    sqlalchemy.Column("learner_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id")),
    sqlalchemy.Column("reason", sqlalchemy.Text),
    sqlalchemy.Column("learner_evidence_ref", sqlalchemy.String),
    sqlalchemy.Column("status", sqlalchemy.String, default="PENDING", index=True),
    sqlalchemy.Column("tutor_response", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("tutor_evidence_ref", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("tutor_responded_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("outcome", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("admin_note", sqlalchemy.Text, nullable=True),
    sqlalchemy.Column("decided_by", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), nullable=True),
    sqlalchemy.Column("forced", sqlalchemy.Boolean, default=False),
    sqlalchemy.Column("resolved_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("archived_at", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("version", sqlalchemy.Integer, nullable=False, default=0),
    sqlalchemy.Column("write_token", sqlalchemy.String, nullable=True),
)

# References returned by the evidence store; the bytes live elsewhere
evidence_assets = sqlalchemy.Table(
    "evidence_assets",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String, primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id"), index=True),
    sqlalchemy.Column("view_url", sqlalchemy.String),
    sqlalchemy.Column("download_url", sqlalchemy.String),
    sqlalchemy.Column("size_bytes", sqlalchemy.Integer),
    sqlalchemy.Column("mime_type", sqlalchemy.String),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("slot_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("booked_slots.id"), nullable=True),
    sqlalchemy.Column("party", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("attached_at", sqlalchemy.DateTime(timezone=True), nullable=True),
)

# Outbox read by the external payment ledger
refund_notifications = sqlalchemy.Table(
    "refund_notifications",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("slot_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("booked_slots.id"), index=True),
    sqlalchemy.Column("dispute_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("dispute_cases.id"), nullable=True),
    sqlalchemy.Column("cause", sqlalchemy.String),
    sqlalchemy.Column("learner_id", sqlalchemy.Integer, nullable=True),
    sqlalchemy.Column("tutor_id", sqlalchemy.Integer),
    sqlalchemy.Column("payment_id", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.Column("delivered_at", sqlalchemy.DateTime(timezone=True), nullable=True),
)

availability_windows = sqlalchemy.Table(
    "availability_windows",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("booking_plan_id", sqlalchemy.Integer, index=True),
    sqlalchemy.Column("tutor_id", sqlalchemy.Integer, sqlalchemy.ForeignKey("users.id")),
    sqlalchemy.Column("weekday", sqlalchemy.Integer),
    sqlalchemy.Column("start_time", sqlalchemy.Time),
    sqlalchemy.Column("end_time", sqlalchemy.Time),
)

idempotency_keys = sqlalchemy.Table(
    "idempotency_keys",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("key", sqlalchemy.String),
    sqlalchemy.Column("user_id", sqlalchemy.Integer),
    sqlalchemy.Column("operation", sqlalchemy.String),
    sqlalchemy.Column("response", sqlalchemy.Text),
    sqlalchemy.Column("write_token", sqlalchemy.String),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True)),
    sqlalchemy.UniqueConstraint("key", "user_id", "operation", name="uq_idempotency_key"),
)
