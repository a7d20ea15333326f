# main.py
from datetime import timedelta, datetime
import fastapi
import json
import logging
from typing import Callable, List, Optional, Tuple
from fastapi import Depends, File, Header, HTTPException, status, Query, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.security import OAuth2PasswordRequestForm
from booking_attendance.arbiter import AdminArbiter
from booking_attendance.attendance import AttendanceTracker
from booking_attendance.availability import AvailabilityEditor
from booking_attendance.config import ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_USERNAME
from booking_attendance.data_models import BookedSlot, DisputeStatus, SlotSnapshot
from booking_attendance.database import database, engine, metadata
from booking_attendance.disputes import DisputeCoordinator
from booking_attendance.errors import BookingError, NotAuthorized, register_exception_handlers
from booking_attendance.evidence import EvidenceRegistry
from booking_attendance.idempotency import IdempotencyStore
from booking_attendance.ledger import OutboxPaymentLedger
from booking_attendance.logging_config import setup_logging
from booking_attendance.models import users
from booking_attendance.reporting import SlotReport
from booking_attendance.schemas import (
    AttendanceRequest,
    AvailabilityOut,
    AvailabilityUpdate,
    AvailabilityWindowIn,
    ContestRequest,
    DecisionRequest,
    DisputeRequest,
    EvidenceOut,
    SlotCreate,
    SlotReportOut,
    SlotView,
    evidence_out,
    slot_view,
)
from booking_attendance.slots import SlotLedger
from booking_attendance.time_window import TimeWindowGuard, utcnow
from booking_attendance.auth import (
    ROLES,
    User,
    Token,
    UserCreate,
    verify_password,
    create_access_token,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    get_current_active_user,
    get_current_admin,
    create_user,
    decode_token_and_get_user,
    pwd_context,
)

logger = logging.getLogger(__name__)


#FastAPI Setup
app = fastapi.FastAPI(title="Booking Attendance")
register_exception_handlers(app)


def can_view(user: User, slot: BookedSlot) -> bool:
    return user.role == "admin" or slot.party_of(user.id) is not None


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[Tuple[fastapi.WebSocket, User]] = []

    async def connect(self, websocket: fastapi.WebSocket, user: User):
        await websocket.accept()
        self.active_connections.append((websocket, user))

    def disconnect(self, websocket: fastapi.WebSocket):
        self.active_connections = [(ws, user) for ws, user in self.active_connections if ws is not websocket]

    async def send_slot(self, slot: BookedSlot, message: str):
        """Deliver a slot message to its tutor, its learner and admins."""
        for connection, user in list(self.active_connections):
            if not can_view(user, slot):
                continue
            try:
                await connection.send_text(message)
            except (fastapi.WebSocketDisconnect, RuntimeError):
                logger.info("Dropping closed websocket connection")
                self.disconnect(connection)

manager = ConnectionManager()


# Service wiring; tests override get_clock and get_evidence_registry
def get_clock() -> Callable[[], datetime]:
    return utcnow

def get_guard(clock: Callable[[], datetime] = Depends(get_clock)) -> TimeWindowGuard:
    return TimeWindowGuard(clock)

def get_ledger() -> OutboxPaymentLedger:
    return OutboxPaymentLedger(database)

def get_evidence_registry() -> EvidenceRegistry:
    return EvidenceRegistry(database)

def get_tracker(guard: TimeWindowGuard = Depends(get_guard),
                evidence: EvidenceRegistry = Depends(get_evidence_registry)) -> AttendanceTracker:
    return AttendanceTracker(database, guard, evidence)

def get_coordinator(guard: TimeWindowGuard = Depends(get_guard),
                    evidence: EvidenceRegistry = Depends(get_evidence_registry),
                    ledger: OutboxPaymentLedger = Depends(get_ledger)) -> DisputeCoordinator:
    return DisputeCoordinator(database, guard, evidence, ledger)

def get_arbiter(guard: TimeWindowGuard = Depends(get_guard),
                ledger: OutboxPaymentLedger = Depends(get_ledger)) -> AdminArbiter:
    return AdminArbiter(database, guard, ledger)

def get_editor(coordinator: DisputeCoordinator = Depends(get_coordinator)) -> AvailabilityEditor:
    return AvailabilityEditor(database, coordinator)

def get_idempotency_store() -> IdempotencyStore:
    return IdempotencyStore(database)


async def idempotent(key: Optional[str], user: User, operation: str, action, store: IdempotencyStore):
    """Run `action` once per Idempotency-Key; a resend gets the stored response."""
    if not key:
        return jsonable_encoder(await action())

    async def encoded():
        return jsonable_encoder(await action())
    return await store.run(key, user.id, operation, encoded, utcnow())


async def publish(snapshot: SlotSnapshot) -> SlotView:
    view = slot_view(snapshot)
    await manager.send_slot(snapshot.slot, json.dumps({"type": "slot_updated", "data": jsonable_encoder(view)}))
    return view


# Auth

@app.post("/token", response_model=Token)
async def login_for_access_token(response: Response, form_data: OAuth2PasswordRequestForm = Depends()):
    query = users.select().where(users.c.username == form_data.username)
    user_record = await database.fetch_one(query)
    if not user_record or not verify_password(form_data.password, user_record['hashed_password']):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user_record['username']}, expires_delta=access_token_expires
    )

    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        samesite="lax",
    )

    # Also return the token in the body for the WebSocket connection
    return {"access_token": access_token, "token_type": "bearer"}


@app.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(user: UserCreate):
    if user.role not in ROLES or user.role == "admin":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Role must be learner or tutor."
        )
    query = users.select().where(users.c.username == user.username)
    if await database.fetch_one(query):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already registered."
        )
    query = users.select().where(users.c.email == user.email)
    if await database.fetch_one(query):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered."
        )

    user_id = await create_user(user)
    return {"message": "User created successfully.", "id": user_id}


@app.get("/api/users/me", response_model=User)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    """
    Get the current authenticated user's profile data.
    """
    return current_user


# Evidence

@app.post("/api/evidence", response_model=EvidenceOut, status_code=status.HTTP_201_CREATED)
async def upload_evidence(file: UploadFile = File(...),
                          current_user: User = Depends(get_current_active_user),
                          registry: EvidenceRegistry = Depends(get_evidence_registry),
                          guard: TimeWindowGuard = Depends(get_guard)):
    content = await file.read()
    asset = await registry.upload(current_user.id, file.filename, content, file.content_type, guard.now())
    return evidence_out(asset)


# Slots

@app.post("/api/slots", response_model=SlotView, status_code=status.HTTP_201_CREATED)
async def create_paid_slot(slot: SlotCreate,
                           current_user: User = Depends(get_current_admin),
                           guard: TimeWindowGuard = Depends(get_guard),
                           store: IdempotencyStore = Depends(get_idempotency_store),
                           idempotency_key: Optional[str] = Header(None)):
    """Called by the payment flow once the learner's payment succeeded."""
    async def action():
        snapshot = await SlotLedger(database).create_paid_slot(now=guard.now(), **slot.model_dump())
        return await publish(snapshot)
    return await idempotent(idempotency_key, current_user, "create_slot", action, store)


@app.get("/api/slots/{slot_id}", response_model=SlotView)
async def read_slot(slot_id: int, current_user: User = Depends(get_current_active_user)):
    snapshot = await SlotLedger(database).load_snapshot(slot_id)
    if not can_view(current_user, snapshot.slot):
        raise NotAuthorized(f"Only the parties on slot {slot_id} can view it.", slot_id=slot_id)
    return slot_view(snapshot)


@app.post("/api/slots/{slot_id}/attendance", response_model=SlotView)
async def record_attendance(slot_id: int, body: AttendanceRequest,
                            current_user: User = Depends(get_current_active_user),
                            tracker: AttendanceTracker = Depends(get_tracker),
                            store: IdempotencyStore = Depends(get_idempotency_store),
                            idempotency_key: Optional[str] = Header(None)):
    async def action():
        return await publish(await tracker.record_attendance(slot_id, current_user, body.evidence_ref))
    return await idempotent(idempotency_key, current_user, f"attendance:{slot_id}", action, store)


@app.post("/api/slots/{slot_id}/disputes", response_model=SlotView, status_code=status.HTTP_201_CREATED)
async def file_dispute(slot_id: int, body: DisputeRequest,
                       current_user: User = Depends(get_current_active_user),
                       coordinator: DisputeCoordinator = Depends(get_coordinator),
                       store: IdempotencyStore = Depends(get_idempotency_store),
                       idempotency_key: Optional[str] = Header(None)):
    async def action():
        return await publish(await coordinator.file_dispute(slot_id, current_user, body.reason, body.evidence_ref))
    return await idempotent(idempotency_key, current_user, f"dispute:{slot_id}", action, store)


@app.post("/api/disputes/{dispute_id}/contest", response_model=SlotView)
async def contest_dispute(dispute_id: int, body: ContestRequest,
                          current_user: User = Depends(get_current_active_user),
                          coordinator: DisputeCoordinator = Depends(get_coordinator),
                          store: IdempotencyStore = Depends(get_idempotency_store),
                          idempotency_key: Optional[str] = Header(None)):
    async def action():
        return await publish(await coordinator.contest(dispute_id, current_user, body.evidence_ref))
    return await idempotent(idempotency_key, current_user, f"contest:{dispute_id}", action, store)


@app.post("/api/disputes/{dispute_id}/agree-refund", response_model=SlotView)
async def agree_refund(dispute_id: int,
                       current_user: User = Depends(get_current_active_user),
                       coordinator: DisputeCoordinator = Depends(get_coordinator),
                       store: IdempotencyStore = Depends(get_idempotency_store),
                       idempotency_key: Optional[str] = Header(None)):
    async def action():
        return await publish(await coordinator.agree_refund(dispute_id, current_user))
    return await idempotent(idempotency_key, current_user, f"agree_refund:{dispute_id}", action, store)


@app.put("/api/booking-plans/{plan_id}/availability", response_model=AvailabilityOut)
async def update_availability(plan_id: int, body: AvailabilityUpdate,
                              current_user: User = Depends(get_current_active_user),
                              editor: AvailabilityEditor = Depends(get_editor)):
    if current_user.role != "tutor":
        raise NotAuthorized("Only a tutor can edit availability.", booking_plan_id=plan_id)
    result = await editor.apply_availability(plan_id, current_user, [w.to_window() for w in body.windows])
    for slot_id in result["cancelled"]:
        await publish(await editor.coordinator.slots.load_snapshot(slot_id))
    return AvailabilityOut(
        booking_plan_id=plan_id,
        windows=[AvailabilityWindowIn(weekday=w.weekday, start_time=w.start_time, end_time=w.end_time)
                 for w in result["windows"]],
        cancelled=result["cancelled"],
        skipped=result["skipped"],
    )


# Admin

@app.post("/api/admin/disputes/{dispute_id}/decide", response_model=SlotView)
async def decide_dispute(dispute_id: int, body: DecisionRequest,
                         current_user: User = Depends(get_current_admin),
                         arbiter: AdminArbiter = Depends(get_arbiter),
                         store: IdempotencyStore = Depends(get_idempotency_store),
                         idempotency_key: Optional[str] = Header(None)):
    async def action():
        return await publish(await arbiter.decide(dispute_id, current_user, body.outcome, body.note))
    return await idempotent(idempotency_key, current_user, f"decide:{dispute_id}", action, store)


@app.get("/api/admin/disputes", response_model=List[SlotView])
async def list_disputes(dispute_status: Optional[DisputeStatus] = Query(None, alias="status"),
                        current_user: User = Depends(get_current_admin),
                        arbiter: AdminArbiter = Depends(get_arbiter)):
    statuses = [dispute_status] if dispute_status else None
    return [slot_view(snapshot) for snapshot in await arbiter.open_disputes(statuses)]


@app.get("/api/admin/disputes/overdue", response_model=List[SlotView])
async def list_overdue_disputes(current_user: User = Depends(get_current_admin),
                                arbiter: AdminArbiter = Depends(get_arbiter)):
    return [slot_view(snapshot) for snapshot in await arbiter.overdue_disputes()]


@app.post("/api/admin/slots/{slot_id}/release", response_model=SlotView)
async def release_slot(slot_id: int,
                       current_user: User = Depends(get_current_admin),
                       arbiter: AdminArbiter = Depends(get_arbiter)):
    return await publish(await arbiter.release_quarantine(slot_id, current_user))


@app.post("/api/admin/sweeps/auto-confirm")
async def auto_confirm(current_user: User = Depends(get_current_admin),
                       tracker: AttendanceTracker = Depends(get_tracker)):
    completed = await tracker.auto_confirm_learners()
    for slot_id in completed:
        await publish(await tracker.slots.load_snapshot(slot_id))
    return {"completed": completed}


@app.get("/api/admin/refunds")
async def pending_refunds(current_user: User = Depends(get_current_admin),
                          ledger: OutboxPaymentLedger = Depends(get_ledger)):
    return await ledger.pending()


@app.post("/api/admin/refunds/{notification_id}/delivered", status_code=status.HTTP_204_NO_CONTENT)
async def refund_delivered(notification_id: int,
                           current_user: User = Depends(get_current_admin),
                           ledger: OutboxPaymentLedger = Depends(get_ledger),
                           guard: TimeWindowGuard = Depends(get_guard)):
    await ledger.mark_delivered(notification_id, guard.now())


# Reporting

@app.get("/api/reports/slots", response_model=SlotReportOut)
async def slot_report(tutor_id: Optional[int] = None,
                      start: Optional[datetime] = None,
                      end: Optional[datetime] = None,
                      by_tutor: bool = False,
                      current_user: User = Depends(get_current_active_user)):
    if current_user.role == "tutor":
        if tutor_id is not None and tutor_id != current_user.id:
            raise NotAuthorized("Tutors can only report on their own slots.")
        tutor_id, by_tutor = current_user.id, False
    elif current_user.role != "admin":
        raise NotAuthorized("Only tutors and admins can read slot reports.")
    report = SlotReport(database)
    counts = await report.status_counts(tutor_id=tutor_id, start=start, end=end)
    breakdown = await report.counts_by_tutor(start=start, end=end) if by_tutor else None
    return SlotReportOut(counts=counts, by_tutor=breakdown)


@app.websocket("/ws")
async def websocket_endpoint(websocket: fastapi.WebSocket, token: str = Query(None)):
    """
    Pushes `slot_updated` messages with the canonical slot view after every
    change. Clients may also ask for a slot with {"type": "get_slot", "data": {"slot_id": ...}}.
    """
    if token is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        current_user = await decode_token_and_get_user(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, current_user)
    await websocket.send_text(json.dumps({
        "type": "auth_success",
        "data": {"username": current_user.username, "role": current_user.role, "full_name": current_user.full_name}
    }))

    try:
        while True:
            data = await websocket.receive_text()
            message = json.loads(data)

            if message.get("type") == "get_slot":
                slot_id = message.get("data", {}).get("slot_id")
                try:
                    snapshot = await SlotLedger(database).load_snapshot(slot_id)
                except BookingError as e:
                    await websocket.send_text(json.dumps({"type": "error", "data": e.detail}))
                    continue
                if not can_view(current_user, snapshot.slot):
                    await websocket.send_text(json.dumps({"type": "error", "data": "Not authorized"}))
                    continue
                await websocket.send_text(json.dumps({
                    "type": "slot_updated", "data": jsonable_encoder(slot_view(snapshot))
                }))

    except fastapi.WebSocketDisconnect:
        manager.disconnect(websocket)


@app.on_event("startup")
async def startup():
    setup_logging()
    await database.connect()
    # Create tables if they don't exist
    metadata.create_all(bind=engine)

    async with database.transaction():
        query = users.select().where(users.c.username == ADMIN_USERNAME)
        if not await database.fetch_one(query):
            admin_user = {
                "username": ADMIN_USERNAME,
                "full_name": "Admin",
                "email": ADMIN_EMAIL,
                "hashed_password": pwd_context.hash(ADMIN_PASSWORD),
                "role": "admin"
            }
            await database.execute(query=users.insert(), values=admin_user)
            logger.info("Seeded admin user %s", ADMIN_USERNAME)


@app.on_event("shutdown")
async def shutdown():
    await database.disconnect()
