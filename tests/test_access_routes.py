import base64
import io
import re
import threading

import pytest

import app as app_module
import database
from audit_sink import AuditWriter, InMemoryAuditSink
from errors import UpstreamUnavailable
from otp_service import OtpService
from rbac import decode_token, generate_token
from summarizer import ExtractiveSummarizer

BUNDLE = {"bloodType": "O+", "allergies": ["penicillin"]}


@pytest.fixture
def api(monkeypatch, ledger, deadline_timer):
    monkeypatch.setattr(app_module, "ledger", ledger)
    monkeypatch.setattr(app_module, "deadline_timer", deadline_timer)
    sink = InMemoryAuditSink()
    monkeypatch.setattr(app_module, "audit_sink", sink)
    monkeypatch.setattr(app_module, "audit_writer", AuditWriter(sink))
    monkeypatch.setattr(app_module, "summarizer", ExtractiveSummarizer())
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


def auth(role, user_id="user@jeevan.in", patient_id=None):
    return {"Authorization": f"Bearer {generate_token(user_id, role, patient_id=patient_id)}"}


def open_request(api, doctor="D1", patient_id="P-2026-047"):
    res = api.post("/api/access-requests", json={"doctorIdentity": doctor, "patientId": patient_id})
    assert res.status_code == 201
    return res.get_json()["requestId"]


# ── Create / list ─────────────────────────────────────────────────────────────

def test_create_request(api, ledger):
    res = api.post("/api/access-requests", json={"doctorIdentity": "D1", "patientId": "P-2026-047"})

    body = res.get_json()
    assert res.status_code == 201
    assert body["state"] == "pending"
    assert body["patientNotified"] is False
    assert ledger.snapshot(body["requestId"])["doctor_identity"] == "D1"


def test_create_rejects_bad_patient_id(api):
    res = api.post("/api/access-requests", json={"doctorIdentity": "D1", "patientId": "047"})
    assert res.status_code == 400
    assert res.get_json()["error"] == "InvalidPatient"


def test_doctor_token_supplies_identity(api, ledger):
    res = api.post("/api/access-requests", json={"patientId": "P-2026-047"},
                   headers=auth("DOCTOR", "dr.rao@clinic.in"))
    assert ledger.snapshot(res.get_json()["requestId"])["doctor_identity"] == "dr.rao@clinic.in"


def test_doctor_token_rejects_foreign_body_identity(api, ledger):
    headers = auth("DOCTOR", "dr.rao@clinic.in")

    mismatched = api.post("/api/access-requests", json={"doctorIdentity": "dr.iyer@clinic.in", "patientId": "P-2026-047"},
                          headers=headers)
    assert mismatched.status_code == 403
    assert len(ledger) == 0

    res = api.post("/api/access-requests", json={"doctorIdentity": "dr.rao@clinic.in", "patientId": "P-2026-047"},
                   headers=headers)
    assert res.status_code == 201
    poll = api.get(f"/api/access-requests/{res.get_json()['requestId']}", headers=headers)
    assert poll.status_code == 200
    assert poll.get_json()["outcome"] == "waiting"


def test_patient_cannot_open_request(api):
    res = api.post("/api/access-requests", json={"doctorIdentity": "D1", "patientId": "P-2026-047"},
                   headers=auth("PATIENT", patient_id="P-2026-047"))
    assert res.status_code == 403


def test_invalid_token_is_rejected(api):
    res = api.post("/api/access-requests", json={"doctorIdentity": "D1", "patientId": "P-2026-047"},
                   headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_list_pending_for_patient(api):
    request_id = open_request(api)
    open_request(api, patient_id="P-2026-099")

    res = api.get("/api/access-requests?patientId=P-2026-047")

    pending = res.get_json()["request"]
    assert pending["request_id"] == request_id
    assert pending["doctor_identity"] == "D1"
    assert "payload" not in pending


def test_list_pending_empty(api):
    assert api.get("/api/access-requests?patientId=P-2026-047").get_json()["request"] is None


def test_list_pending_requires_patient_id(api):
    assert api.get("/api/access-requests").status_code == 400


def test_patient_lists_own_requests_from_token(api):
    request_id = open_request(api)
    headers = auth("PATIENT", patient_id="P-2026-047")

    assert api.get("/api/access-requests", headers=headers).get_json()["request"]["request_id"] == request_id
    assert api.get("/api/access-requests?patientId=P-2026-099", headers=headers).status_code == 403


# ── Decide / poll ─────────────────────────────────────────────────────────────

def test_approve_then_poll_returns_payload(api, timers):
    request_id = open_request(api)

    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})
    body = res.get_json()
    assert res.status_code == 200
    assert body["ok"] is True
    assert body["state"] == "approved"
    assert body["grantExpiresAt"].endswith("Z")
    assert timers.timers[0].delay == 900

    status = api.get(f"/api/access-requests/{request_id}").get_json()
    assert status["outcome"] == "granted"
    assert status["payload"] == BUNDLE
    assert status["grantExpiresAt"] == body["grantExpiresAt"]


def test_second_decision_conflicts(api):
    request_id = open_request(api)
    api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "denied"})

    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})

    assert res.status_code == 409
    assert res.get_json()["error"] == "AlreadyDecided"


def test_approve_requires_payload(api):
    request_id = open_request(api)
    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved"})
    assert res.status_code == 400
    assert res.get_json()["error"] == "PayloadRequired"


def test_decision_must_be_known(api):
    request_id = open_request(api)
    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "later"})
    assert res.status_code == 400


def test_unknown_request_is_404(api):
    assert api.get("/api/access-requests/missing").status_code == 404
    res = api.post("/api/access-requests/missing/decision", json={"decision": "denied"})
    assert res.status_code == 404
    assert res.get_json()["error"] == "NotFound"


def test_denied_and_expired_read_the_same_to_the_doctor(api, clock):
    denied = open_request(api)
    api.post(f"/api/access-requests/{denied}/decision", json={"decision": "denied"})
    ignored = open_request(api, patient_id="P-2026-048")
    clock.advance(120)

    denied_status = api.get(f"/api/access-requests/{denied}").get_json()
    expired_status = api.get(f"/api/access-requests/{ignored}").get_json()

    assert denied_status["outcome"] == expired_status["outcome"] == "not_granted"
    assert denied_status["message"] == expired_status["message"]
    assert "payload" not in expired_status


def test_late_decision_is_gone(api, clock):
    request_id = open_request(api)
    clock.advance(121)

    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})

    assert res.status_code == 410
    assert res.get_json()["error"] == "ExpiredRequest"


def test_grant_deadline_timer_expires_record(api, ledger, clock, timers):
    request_id = open_request(api)
    api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})

    clock.advance(900)
    timers.fire_all()

    record = ledger.snapshot(request_id)
    assert record["state"] == "expired"
    assert record["expiry_reason"] == "grant_elapsed"
    assert api.get(f"/api/access-requests/{request_id}").get_json()["outcome"] == "not_granted"


def test_revoked_grant_turns_timer_into_no_op(api, ledger, clock, timers):
    request_id = open_request(api)
    api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})
    res = api.post(f"/api/access-requests/{request_id}/revoke")
    assert res.get_json()["state"] == "expired"
    assert timers.timers[0].cancelled

    clock.advance(900)
    timers.fire_all()

    assert ledger.snapshot(request_id)["expiry_reason"] == "revoked"


def test_deny_after_approval_conflicts_and_grant_stays_open(api):
    request_id = open_request(api)
    api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})

    res = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "denied"})

    assert res.status_code == 409
    assert api.get(f"/api/access-requests/{request_id}").get_json()["payload"] == BUNDLE


def test_revoke_rules(api):
    request_id = open_request(api)

    assert api.post(f"/api/access-requests/{request_id}/revoke").get_json()["error"] == "NoActiveGrant"
    api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "approved", "payload": BUNDLE})

    doctor = api.post(f"/api/access-requests/{request_id}/revoke", headers=auth("DOCTOR", "D1"))
    other = api.post(f"/api/access-requests/{request_id}/revoke", headers=auth("PATIENT", patient_id="P-2026-099"))
    owner = api.post(f"/api/access-requests/{request_id}/revoke", headers=auth("PATIENT", patient_id="P-2026-047"))
    again = api.post(f"/api/access-requests/{request_id}/revoke")

    assert (doctor.status_code, other.status_code, owner.status_code, again.status_code) == (403, 403, 200, 410)


def test_only_owning_patient_decides(api):
    request_id = open_request(api)

    other = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "denied"},
                     headers=auth("PATIENT", patient_id="P-2026-099"))
    doctor = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "denied"},
                      headers=auth("DOCTOR", "D1"))
    owner = api.post(f"/api/access-requests/{request_id}/decision", json={"decision": "denied"},
                     headers=auth("PATIENT", patient_id="P-2026-047"))

    assert (other.status_code, doctor.status_code, owner.status_code) == (403, 403, 200)


def test_doctor_polls_only_own_requests(api):
    request_id = open_request(api, doctor="dr.rao@clinic.in")

    mine = api.get(f"/api/access-requests/{request_id}", headers=auth("DOCTOR", "dr.rao@clinic.in"))
    theirs = api.get(f"/api/access-requests/{request_id}", headers=auth("DOCTOR", "dr.iyer@clinic.in"))

    assert mine.status_code == 200
    assert theirs.status_code == 403


# ── Legacy endpoints ──────────────────────────────────────────────────────────

def test_legacy_endpoints_walk_the_same_flow(api):
    res = api.post("/api/request-patient-access", json={"doctorIdentity": "D1", "patientId": "P-2026-047"})
    request_id = res.get_json()["requestId"]

    pending = api.get("/api/check-access-requests?patientId=P-2026-047").get_json()["request"]
    assert pending["request_id"] == request_id

    approved = api.post("/api/approve-access-request", json={"requestId": request_id, "payload": BUNDLE})
    assert approved.get_json()["state"] == "approved"

    status = api.get(f"/api/check-request-status?requestId={request_id}").get_json()
    assert status["payload"] == BUNDLE


def test_legacy_endpoints_require_request_id(api):
    assert api.post("/api/approve-access-request", json={}).status_code == 400
    assert api.get("/api/check-request-status").status_code == 400


# ── Scan-to-treat ─────────────────────────────────────────────────────────────

def test_scan_opens_request_from_qr(api, ledger, monkeypatch):
    monkeypatch.setattr(app_module, "decode_qr", lambda data: "P-2026-047")

    res = api.post(
        "/api/access-requests/scan",
        data={"file": (io.BytesIO(b"\x89PNG"), "qr.png")},
        headers=auth("DOCTOR", "dr.rao@clinic.in"),
        content_type="multipart/form-data",
    )

    assert res.status_code == 201
    record = ledger.snapshot(res.get_json()["requestId"])
    assert (record["doctor_identity"], record["patient_id"]) == ("dr.rao@clinic.in", "P-2026-047")


def test_scan_reads_profile_bundle(api, ledger, monkeypatch):
    monkeypatch.setattr(app_module, "decode_qr", lambda data: '{"name":"Asha","patientId":"P-2026-312"}')

    res = api.post(
        "/api/access-requests/scan",
        data={"file": (io.BytesIO(b"\x89PNG"), "qr.png"), "doctorIdentity": "D7"},
        content_type="multipart/form-data",
    )

    assert ledger.snapshot(res.get_json()["requestId"])["patient_id"] == "P-2026-312"


def test_scan_accepts_camera_data_url(api, ledger, monkeypatch):
    seen = []
    monkeypatch.setattr(app_module, "decode_qr", lambda data: seen.append(data) or "P-2026-047")
    image = "data:image/png;base64," + base64.b64encode(b"\x89PNGframe").decode()

    res = api.post("/api/access-requests/scan", json={"image": image},
                   headers=auth("DOCTOR", "dr.rao@clinic.in"))

    assert res.status_code == 201
    assert seen == [b"\x89PNGframe"]
    assert ledger.snapshot(res.get_json()["requestId"])["doctor_identity"] == "dr.rao@clinic.in"
    assert api.post("/api/access-requests/scan", json={"image": 42}).status_code == 400


def test_scan_rejects_foreign_doctor_identity(api, ledger, monkeypatch):
    monkeypatch.setattr(app_module, "decode_qr", lambda data: "P-2026-047")

    res = api.post(
        "/api/access-requests/scan",
        data={"file": (io.BytesIO(b"\x89PNG"), "qr.png"), "doctorIdentity": "dr.iyer@clinic.in"},
        headers=auth("DOCTOR", "dr.rao@clinic.in"),
        content_type="multipart/form-data",
    )

    assert res.status_code == 403
    assert len(ledger) == 0


def test_scan_without_qr(api, monkeypatch):
    def unreadable(data):
        raise ValueError("No QR code found in image.")

    monkeypatch.setattr(app_module, "decode_qr", unreadable)
    assert api.post("/api/access-requests/scan").status_code == 400
    res = api.post("/api/access-requests/scan", data={"file": (io.BytesIO(b"x"), "qr.png")},
                   content_type="multipart/form-data")
    assert res.status_code == 400


# ── Admin ─────────────────────────────────────────────────────────────────────

def test_admin_ledger_view_requires_admin(api):
    open_request(api)

    assert api.get("/api/admin/access-requests").status_code == 401
    assert api.get("/api/admin/access-requests", headers=auth("DOCTOR")).status_code == 403
    res = api.get("/api/admin/access-requests", headers=auth("ADMIN"))
    assert res.status_code == 200
    assert res.get_json()["count"] == 1


def test_ledger_changes_are_mirrored(monkeypatch, clock):
    stored, audited = [], []
    monkeypatch.setattr(database, "store_access_request", lambda record: stored.append(record["state"]) or True)

    class QueuedWriter:
        def submit(self, record_hash, reason, actor=None):
            audited.append((record_hash, reason))

    monkeypatch.setattr(app_module, "audit_writer", QueuedWriter())
    ledger = app_module.AccessLedger(clock=clock, on_change=app_module._on_ledger_change)

    request_id = ledger.create("D1", "P-2026-047")
    ledger.decide(request_id, "approved", BUNDLE)
    ledger.revoke(request_id)

    assert stored == ["pending", "approved", "expired"]
    assert audited[-1] == (f"ACCESS_{request_id}", "Access request expired (revoked)")


# ── OTP / registration ────────────────────────────────────────────────────────

@pytest.fixture
def outbox(monkeypatch, clock):
    sent = []
    monkeypatch.setattr(app_module, "otp_service",
                        OtpService(sender=lambda to, subject, text, html: sent.append((to, text)), clock=clock))
    return sent


def _code_from(outbox):
    return re.search(r"\b(\d{6})\b", outbox[-1][1]).group(1)


def test_otp_login_for_new_patient(api, outbox):
    assert api.post("/api/send-otp", json={"email": "asha@example.com"}).get_json()["message"] == "OTP sent"

    res = api.post("/api/verify-otp", json={"email": "asha@example.com", "otp": _code_from(outbox)})

    body = res.get_json()
    assert res.status_code == 200
    assert body["isNewPatient"] is True
    assert decode_token(body["token"])["role"] == "PATIENT"


def test_otp_login_for_known_patient(api, outbox, monkeypatch):
    monkeypatch.setattr(database, "find_patient_by_email",
                        lambda email: {"id": "u-1", "email": email, "patient_id": "P-2026-047"})
    api.post("/api/send-otp", json={"email": "asha@example.com"})

    body = api.post("/api/verify-otp", json={"email": "asha@example.com", "otp": _code_from(outbox)}).get_json()

    assert body["isNewPatient"] is False
    assert decode_token(body["token"])["patient_id"] == "P-2026-047"


def test_otp_is_single_use(api, outbox):
    api.post("/api/send-otp", json={"email": "asha@example.com"})
    code = _code_from(outbox)

    assert api.post("/api/verify-otp", json={"email": "asha@example.com", "otp": code}).status_code == 200
    assert api.post("/api/verify-otp", json={"email": "asha@example.com", "otp": code}).status_code == 400


def test_otp_input_validation(api, outbox):
    assert api.post("/api/send-otp", json={}).status_code == 400
    assert api.post("/api/verify-otp", json={"email": "asha@example.com"}).status_code == 400
    res = api.post("/api/verify-otp", json={"email": "a@b.c", "otp": "123456", "role": "ADMIN"})
    assert res.status_code == 400


def test_otp_delivery_failure(api, monkeypatch, clock):
    def relay_down(to, subject, text, html):
        raise UpstreamUnavailable("smtp", "connection refused")

    monkeypatch.setattr(app_module, "otp_service", OtpService(sender=relay_down, clock=clock))

    res = api.post("/api/send-otp", json={"email": "asha@example.com"})
    assert res.status_code == 502
    assert res.get_json()["error"] == "Failed to send OTP"


def test_complete_registration(api, monkeypatch):
    monkeypatch.setattr(database, "register_patient",
                        lambda user_id, email, full_name="": {"patient_id": "P-2026-512", "created": True})

    body = api.post("/api/complete-registration", json={"userId": "u-1", "email": "asha@example.com"}).get_json()

    assert body["patientId"] == "P-2026-512"
    assert decode_token(body["token"])["patient_id"] == "P-2026-512"


def test_complete_registration_without_supabase(api):
    res = api.post("/api/complete-registration", json={"userId": "u-1", "email": "asha@example.com"})
    assert res.status_code == 503
    assert res.get_json()["error"] == "UpstreamUnavailable"


def test_dev_login_and_verify(api):
    res = api.post("/api/auth/login", json={"user_id": "p1", "role": "PATIENT", "patient_id": "P-2026-047"})
    token = res.get_json()["token"]

    payload = api.post("/api/auth/verify", json={"token": token}).get_json()["payload"]
    assert payload["patient_id"] == "P-2026-047"

    assert api.post("/api/auth/login", json={"user_id": "p1", "role": "PATIENT"}).status_code == 400
    assert api.post("/api/auth/verify", json={"token": "junk"}).status_code == 401


# ── Gatekeeper / emergency ────────────────────────────────────────────────────

def test_vault_unlock_logs_reason(api):
    res = api.post("/api/vault/unlock", json={"recordHash": "QmX1", "reason": "Follow-up for asthma"},
                   headers=auth("DOCTOR", "dr.rao@clinic.in"))

    body = res.get_json()
    assert body["unlocked"] is True
    assert body["audit"]["actor"] == "dr.rao@clinic.in"
    assert app_module.audit_sink.recent()[0]["record_hash"] == "QmX1"


def test_vault_unlock_requires_reason(api):
    res = api.post("/api/vault/unlock", json={"recordHash": "QmX1", "reason": "hi"})
    assert res.status_code == 400


def test_vault_unlock_survives_audit_outage(api, monkeypatch):
    class DownSink:
        def record(self, *args, **kwargs):
            raise UpstreamUnavailable("audit-contract", "rpc timeout")

    monkeypatch.setattr(app_module, "audit_writer", AuditWriter(DownSink()))

    res = api.post("/api/vault/unlock", json={"recordHash": "QmX1", "reason": "Pre-op review"})
    assert res.status_code == 200
    assert res.get_json()["audit"] is None


def test_vault_unlock_does_not_wait_on_slow_audit_sink(api, monkeypatch):
    release = threading.Event()
    sink = InMemoryAuditSink()

    class SlowSink:
        def record(self, *args, **kwargs):
            release.wait(5)
            return sink.record(*args, **kwargs)

    writer = AuditWriter(SlowSink(), wait_s=0.05)
    monkeypatch.setattr(app_module, "audit_writer", writer)

    res = api.post("/api/vault/unlock", json={"recordHash": "QmX1", "reason": "Pre-op review"})
    assert res.status_code == 200
    assert res.get_json()["unlocked"] is True
    assert res.get_json()["audit"] is None

    release.set()
    writer.join()
    assert sink.recent()[0]["record_hash"] == "QmX1"


def test_emergency_override(api, monkeypatch):
    packet = {"patient_id": "P-2026-047", "blood_type": "O+", "allergies": "penicillin"}
    monkeypatch.setattr(database, "fetch_life_packet", lambda patient_id: packet)
    body = {"patientId": "P-2026-047", "legalAccepted": True}

    assert api.post("/api/emergency/override", json=body).status_code == 401
    assert api.post("/api/emergency/override", json=body, headers=auth("PATIENT")).status_code == 403
    missing = api.post("/api/emergency/override", json={"patientId": "P-2026-047"}, headers=auth("DOCTOR"))
    assert missing.status_code == 400

    res = api.post("/api/emergency/override", json=body, headers=auth("DOCTOR", "dr.rao@clinic.in"))
    assert res.get_json()["lifePacket"] == packet
    entry = app_module.audit_sink.recent()[0]
    assert entry["record_hash"] == "EMERGENCY_P-2026-047"
    assert entry["reason"] == "Emergency Override - Life Packet"


def test_audit_log_is_admin_only(api):
    api.post("/api/vault/unlock", json={"recordHash": "QmX1", "reason": "Pre-op review"})

    assert api.get("/api/audit", headers=auth("DOCTOR")).status_code == 403
    assert len(api.get("/api/audit", headers=auth("ADMIN")).get_json()["logs"]) == 1


def test_audit_log_limit_must_be_numeric(api):
    res = api.get("/api/audit?limit=abc", headers=auth("ADMIN"))
    assert res.status_code == 400
    assert res.get_json()["message"] == "limit must be an integer"
    assert api.get("/api/audit?limit=5", headers=auth("ADMIN")).status_code == 200


# ── Summarizer / QR / system ──────────────────────────────────────────────────

def test_summarize(api):
    text = ("Patient presents with acute cough and fever for three days. "
            "Blood pressure 130/85 mmHg, heart rate 98 bpm. "
            "Plan: chest x-ray and follow up in one week.")
    body = api.post("/api/summarize", json={"text": text}).get_json()
    assert body["engine"] == "extractive"
    assert "cough" in body["summary"]
    assert api.post("/api/summarize", json={"text": " "}).status_code == 400


def test_patient_qr(api):
    body = api.get("/api/qr/P-2026-047").get_json()
    assert body["qr"].startswith("data:image/png;base64,")
    assert api.get("/api/qr/nobody").status_code == 400


def test_profile_qr(api):
    assert api.post("/api/qr/profile", json={"profile": {"patientId": "P-2026-047"}}).status_code == 200
    assert api.post("/api/qr/profile", json={"profile": []}).status_code == 400


def test_health(api):
    body = api.get("/api/health").get_json()
    assert body["status"] == "ok"
    assert body["services"]["audit_sink"] == "InMemoryAuditSink"
    assert body["services"]["expiry_sweeper"] is False
    assert body["services"]["audit_backlog"] == 0


def test_unknown_api_path(api):
    assert api.get("/api/nothing-here").status_code == 404
