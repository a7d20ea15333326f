import os
import tempfile
from datetime import datetime, timedelta, timezone

_TMP = tempfile.mkdtemp(prefix="booking-attendance-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/api.db"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["EVIDENCE_DIR"] = os.path.join(_TMP, "evidence")
os.environ["LOG_FORMAT"] = "console"

import pytest
from databases import Database
from sqlalchemy import create_engine

from booking_attendance.arbiter import AdminArbiter
from booking_attendance.attendance import AttendanceTracker
from booking_attendance.auth import User
from booking_attendance.availability import AvailabilityEditor
from booking_attendance.database import metadata
from booking_attendance.disputes import DisputeCoordinator
from booking_attendance.evidence import EvidenceRegistry, LocalEvidenceStore
from booking_attendance.ledger import OutboxPaymentLedger
from booking_attendance.slots import SlotLedger
from booking_attendance.time_window import TimeWindowGuard

START = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=1)
DURING = START + timedelta(minutes=30)

TUTOR = User(id=1, username="tutor", role="tutor")
LEARNER = User(id=2, username="learner", role="learner")
STRANGER = User(id=3, username="stranger", role="learner")
ADMIN = User(id=99, username="admin", role="admin")


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(DURING)


@pytest.fixture
async def db(tmp_path):
    url = f"sqlite:///{tmp_path}/slots.db"
    metadata.create_all(create_engine(url))
    database = Database(url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def guard(clock):
    return TimeWindowGuard(clock)


@pytest.fixture
def evidence(db, tmp_path):
    return EvidenceRegistry(db, LocalEvidenceStore(str(tmp_path / "evidence"), "/evidence"))


@pytest.fixture
def ledger(db):
    return OutboxPaymentLedger(db)


@pytest.fixture
def tracker(db, guard, evidence):
    return AttendanceTracker(db, guard, evidence)


@pytest.fixture
def coordinator(db, guard, evidence, ledger):
    return DisputeCoordinator(db, guard, evidence, ledger)


@pytest.fixture
def arbiter(db, guard, ledger):
    return AdminArbiter(db, guard, ledger)


@pytest.fixture
def editor(db, coordinator):
    return AvailabilityEditor(db, coordinator)


@pytest.fixture
def slot_ledger(db):
    return SlotLedger(db)


@pytest.fixture
def proof(evidence, clock):
    """Upload a fresh evidence file for a user and return its reference."""
    async def upload(user, name="proof.png"):
        asset = await evidence.upload(user.id, name, b"\x89PNG-evidence", "image/png", clock())
        return asset.ref
    return upload


@pytest.fixture
def make_slot(slot_ledger, clock):
    async def create(start=START, end=END, booking_plan_id=None, tutor=TUTOR, learner=LEARNER):
        return await slot_ledger.create_paid_slot(
            tutor_id=tutor.id,
            learner_id=learner.id,
            start_time=start,
            end_time=end,
            now=clock(),
            booking_plan_id=booking_plan_id,
            payment_id="pay-123",
        )
    return create


@pytest.fixture
async def paid_slot(make_slot):
    snapshot = await make_slot()
    return snapshot.slot
