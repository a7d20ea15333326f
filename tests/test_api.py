from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from booking_attendance.database import engine, metadata
from booking_attendance.main import app, get_clock

from conftest import END, START


@pytest.fixture
def client(clock):
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def register(client, username, role):
    resp = client.post("/register", json={
        "username": username,
        "full_name": username.title(),
        "email": f"{username}@tutoring.io",
        "password": f"pw-{username}",
        "role": role,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def login(client, username, password=None):
    resp = client.post("/token", data={"username": username, "password": password or f"pw-{username}"})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def users(client):
    ids = {
        "tutor": register(client, "tina", "tutor"),
        "learner": register(client, "leo", "learner"),
        "stranger": register(client, "sam", "learner"),
    }
    return {
        "tutor_id": ids["tutor"],
        "learner_id": ids["learner"],
        "tutor": login(client, "tina"),
        "learner": login(client, "leo"),
        "stranger": login(client, "sam"),
        "admin": login(client, "admin", "admin123"),
    }


def create_slot(client, users, start=START, end=END, **extra):
    resp = client.post("/api/slots", headers=users["admin"], json={
        "tutor_id": users["tutor_id"],
        "learner_id": users["learner_id"],
        "start_time": start.isoformat(),
        "end_time": end.isoformat(),
        "payment_id": "pay-42",
        **extra,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def upload(client, headers, content=b"screenshot-bytes"):
    resp = client.post("/api/evidence", headers=headers, files={"file": ("proof.png", content, "image/png")})
    assert resp.status_code == 201, resp.text
    return resp.json()["evidence_ref"]


def test_register_login_and_profile(client, users):
    resp = client.get("/api/users/me", headers=users["tutor"])
    assert resp.status_code == 200
    assert resp.json()["username"] == "tina"
    assert resp.json()["role"] == "tutor"


def test_requests_without_token_are_rejected(client, users):
    assert client.get("/api/users/me").status_code == 401


def test_cookie_authenticates_browser_requests(client, users):
    client.post("/token", data={"username": "leo", "password": "pw-leo"})
    resp = client.get("/api/users/me")
    assert resp.status_code == 200
    assert resp.json()["username"] == "leo"


def test_admin_role_cannot_be_self_registered(client):
    resp = client.post("/register", json={
        "username": "mallory", "full_name": "Mallory", "email": "mallory@tutoring.io",
        "password": "pw", "role": "admin",
    })
    assert resp.status_code == 400


def test_only_admin_records_paid_slots(client, users):
    resp = client.post("/api/slots", headers=users["learner"], json={
        "tutor_id": users["tutor_id"], "learner_id": users["learner_id"],
        "start_time": START.isoformat(), "end_time": END.isoformat(),
    })
    assert resp.status_code == 403


def test_attendance_flow(client, users):
    slot = create_slot(client, users)
    assert slot["canonical_status"] == "AWAITING_ATTENDANCE"

    resp = client.post(f"/api/slots/{slot['id']}/attendance", headers=users["tutor"],
                       json={"evidence_ref": upload(client, users["tutor"])})
    assert resp.status_code == 200
    assert resp.json()["canonical_status"] == "TUTOR_CONFIRMED"

    resp = client.post(f"/api/slots/{slot['id']}/attendance", headers=users["learner"],
                       json={"evidence_ref": upload(client, users["learner"])})
    assert resp.json()["canonical_status"] == "COMPLETED"
    assert resp.json()["status"] == "Completed"

    resp = client.post(f"/api/slots/{slot['id']}/attendance", headers=users["learner"],
                       json={"evidence_ref": upload(client, users["learner"])})
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_RESPONDED"
    assert resp.json()["retryable"] is False


def test_strangers_are_not_authorized(client, users):
    slot = create_slot(client, users)
    resp = client.get(f"/api/slots/{slot['id']}", headers=users["stranger"])
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_AUTHORIZED"

    resp = client.post(f"/api/slots/{slot['id']}/attendance", headers=users["stranger"],
                       json={"evidence_ref": upload(client, users["stranger"])})
    assert resp.status_code == 403


def test_unknown_slot_is_not_found(client, users):
    resp = client.get("/api/slots/404", headers=users["admin"])
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


def test_resent_request_is_replayed(client, users):
    slot = create_slot(client, users)
    body = {"evidence_ref": upload(client, users["tutor"])}
    headers = {**users["tutor"], "Idempotency-Key": "attend-1"}

    first = client.post(f"/api/slots/{slot['id']}/attendance", headers=headers, json=body)
    second = client.post(f"/api/slots/{slot['id']}/attendance", headers=headers, json=body)
    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()

    # without the key the duplicate is refused instead
    third = client.post(f"/api/slots/{slot['id']}/attendance", headers=users["tutor"], json=body)
    assert third.status_code == 409


def test_dispute_refund_flow(client, users):
    slot = create_slot(client, users)
    resp = client.post(f"/api/slots/{slot['id']}/disputes", headers=users["learner"],
                       json={"reason": "no-show", "evidence_ref": upload(client, users["learner"])})
    assert resp.status_code == 201, resp.text
    view = resp.json()
    assert view["canonical_status"] == "DISPUTE_AWAITING_TUTOR"
    assert view["dispute"]["status"] == "PENDING"
    dispute_id = view["dispute"]["id"]

    resp = client.post(f"/api/disputes/{dispute_id}/agree-refund", headers=users["tutor"])
    assert resp.json()["canonical_status"] == "DISPUTE_TUTOR_AGREED_REFUND"
    assert resp.json()["tutor"]["attended"] is False

    resp = client.post(f"/api/disputes/{dispute_id}/contest", headers=users["tutor"],
                       json={"evidence_ref": upload(client, users["tutor"])})
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_RESPONDED"

    resp = client.get("/api/admin/disputes", headers=users["admin"], params={"status": "SUBMITTED"})
    assert [s["id"] for s in resp.json()] == [slot["id"]]

    resp = client.post(f"/api/admin/disputes/{dispute_id}/decide", headers=users["learner"],
                       json={"outcome": "REFUND"})
    assert resp.status_code == 403

    resp = client.post(f"/api/admin/disputes/{dispute_id}/decide", headers=users["admin"],
                       json={"outcome": "REFUND", "note": "tutor agreed"})
    assert resp.status_code == 200
    assert resp.json()["canonical_status"] == "REFUNDED_AFTER_DISPUTE"
    assert resp.json()["status"] == "Rejected"
    assert resp.json()["rejection_cause"] == "disputed"

    [refund] = client.get("/api/admin/refunds", headers=users["admin"]).json()
    assert refund["cause"] == "disputed"
    resp = client.post(f"/api/admin/refunds/{refund['id']}/delivered", headers=users["admin"])
    assert resp.status_code == 204
    assert client.get("/api/admin/refunds", headers=users["admin"]).json() == []


def test_late_actions_and_overdue_queue(client, users, clock):
    slot = create_slot(client, users)
    resp = client.post(f"/api/slots/{slot['id']}/disputes", headers=users["learner"],
                       json={"reason": "no-show", "evidence_ref": upload(client, users["learner"])})
    dispute_id = resp.json()["dispute"]["id"]
    tutor_ref = upload(client, users["tutor"])

    clock.now = END + timedelta(minutes=10)
    resp = client.post(f"/api/disputes/{dispute_id}/contest", headers=users["tutor"],
                       json={"evidence_ref": tutor_ref})
    assert resp.status_code == 409
    assert resp.json()["code"] == "OUTSIDE_TIME_WINDOW"

    overdue = client.get("/api/admin/disputes/overdue", headers=users["admin"]).json()
    assert [s["dispute"]["status"] for s in overdue] == ["PENDING"]

    resp = client.post(f"/api/admin/disputes/{dispute_id}/decide", headers=users["admin"],
                       json={"outcome": "DENY"})
    assert resp.json()["canonical_status"] == "DISPUTE_DENIED"
    assert resp.json()["dispute"]["forced"] is True


def test_empty_evidence_is_a_retryable_failure(client, users):
    resp = client.post("/api/evidence", headers=users["tutor"], files={"file": ("proof.png", b"", "image/png")})
    assert resp.status_code == 503
    assert resp.json()["code"] == "EVIDENCE_UPLOAD_FAILED"
    assert resp.json()["retryable"] is True


def test_tutor_reschedule_over_http(client, users):
    tomorrow = START + timedelta(days=1)
    slot = create_slot(client, users, start=tomorrow, end=tomorrow + timedelta(hours=1), booking_plan_id=3)

    resp = client.put("/api/booking-plans/3/availability", headers=users["learner"], json={"windows": []})
    assert resp.status_code == 403

    resp = client.put("/api/booking-plans/3/availability", headers=users["tutor"], json={
        "windows": [{"weekday": 4, "start_time": "09:00:00", "end_time": "12:00:00"}],
    })
    assert resp.status_code == 200, resp.text
    assert resp.json()["cancelled"] == [slot["id"]]

    view = client.get(f"/api/slots/{slot['id']}", headers=users["learner"]).json()
    assert view["canonical_status"] == "CANCELLED_BY_RESCHEDULE"
    assert view["rejection_cause"] == "reschedule"
    assert view["dispute"] is None


def test_auto_confirm_sweep(client, users, clock):
    slot = create_slot(client, users)
    client.post(f"/api/slots/{slot['id']}/attendance", headers=users["tutor"],
                json={"evidence_ref": upload(client, users["tutor"])})

    clock.now = END + timedelta(hours=1)
    resp = client.post("/api/admin/sweeps/auto-confirm", headers=users["admin"])
    assert resp.json() == {"completed": [slot["id"]]}
    view = client.get(f"/api/slots/{slot['id']}", headers=users["learner"]).json()
    assert view["canonical_status"] == "COMPLETED"
    assert view["learner"]["recorded_by"] == "system"


def test_slot_report(client, users):
    create_slot(client, users)
    resp = client.get("/api/reports/slots", headers=users["tutor"])
    assert resp.json()["counts"] == {"AWAITING_ATTENDANCE": 1}

    resp = client.get("/api/reports/slots", headers=users["admin"], params={"by_tutor": "true"})
    assert resp.json()["by_tutor"] == {str(users["tutor_id"]): {"AWAITING_ATTENDANCE": 1}}

    assert client.get("/api/reports/slots", headers=users["learner"]).status_code == 403


def test_websocket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws"):
            pass


def test_websocket_serves_canonical_view(client, users):
    slot = create_slot(client, users)
    token = users["learner"]["Authorization"].split()[1]
    with client.websocket_connect(f"/ws?token={token}") as ws:
        assert ws.receive_json()["type"] == "auth_success"
        ws.send_json({"type": "get_slot", "data": {"slot_id": slot["id"]}})
        message = ws.receive_json()
        assert message["type"] == "slot_updated"
        assert message["data"]["canonical_status"] == "AWAITING_ATTENDANCE"


def test_slot_updates_reach_only_the_parties(client, users):
    learner_token = users["learner"]["Authorization"].split()[1]
    stranger_token = users["stranger"]["Authorization"].split()[1]
    with client.websocket_connect(f"/ws?token={learner_token}") as learner_ws, \
            client.websocket_connect(f"/ws?token={stranger_token}") as stranger_ws:
        assert learner_ws.receive_json()["type"] == "auth_success"
        assert stranger_ws.receive_json()["type"] == "auth_success"

        slot = create_slot(client, users)
        message = learner_ws.receive_json()
        assert message["type"] == "slot_updated"
        assert message["data"]["id"] == slot["id"]

        # the next thing the stranger hears is the refusal, not the new slot
        stranger_ws.send_json({"type": "get_slot", "data": {"slot_id": slot["id"]}})
        assert stranger_ws.receive_json() == {"type": "error", "data": "Not authorized"}


def test_idempotency_key_is_scoped_to_the_endpoint(client, users):
    slot = create_slot(client, users)
    resp = client.post(f"/api/slots/{slot['id']}/disputes", headers=users["learner"],
                       json={"reason": "no-show", "evidence_ref": upload(client, users["learner"])})
    dispute_id = resp.json()["dispute"]["id"]
    headers = {**users["tutor"], "Idempotency-Key": "answer-1"}

    resp = client.post(f"/api/disputes/{dispute_id}/contest", headers=headers,
                       json={"evidence_ref": upload(client, users["tutor"])})
    assert resp.json()["canonical_status"] == "DISPUTE_TUTOR_CONTESTED"

    resp = client.post(f"/api/disputes/{dispute_id}/agree-refund", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_RESPONDED"
