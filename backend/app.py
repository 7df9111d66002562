from flask import Flask, request, jsonify, send_file, g
from flask_cors import CORS
import logging
import os
import json
import datetime

from dotenv import load_dotenv
load_dotenv()

import database
from access_ledger import AccessLedger, is_valid_patient_id
from access_client import parse_iso
from audit_sink import AuditWriter, build_audit_sink
from errors import LedgerError, NotFound, UpstreamUnavailable
from grant_timer import DeadlineTimer, ExpirySweeper
from notifications import MAIL_CONFIG, mail, mail_configured, notify_patient_of_request, send_email
from otp_service import OtpService
from qr_codes import data_url_to_bytes, decode_qr, encode_profile_bundle, encode_qr
from rbac import (
    generate_token,
    decode_token,
    has_permission,
    require_role,
    optional_auth,
    ROLE_PERMISSIONS,
)
from summarizer import build_summarizer

# ── App Setup ──────────────────────────────────────────────────────────────────
app = Flask(__name__)
CORS(app)   # all origins in dev; restrict per-origin in production
app.config.update(MAIL_CONFIG)
mail.init_app(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("jeevan.app")

_DIR = os.path.dirname(os.path.abspath(__file__))

NOT_GRANTED_MESSAGE = "Access was not granted."


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────

def _on_ledger_change(record: dict):
    """Mirror every ledger transition to Supabase and the audit trail."""
    database.store_access_request(record)
    reason = f"Access request {record['state']}"
    if record.get("expiry_reason"):
        reason += f" ({record['expiry_reason']})"
    audit_writer.submit(f"ACCESS_{record['request_id']}", reason, actor=record.get("doctor_identity"))


def _purge_otp_codes():
    otp_service.purge_expired()


ledger = AccessLedger(on_change=_on_ledger_change)
deadline_timer = DeadlineTimer()
sweeper = ExpirySweeper(ledger, housekeeping=(_purge_otp_codes,))
audit_sink = build_audit_sink()
audit_writer = AuditWriter(audit_sink)
summarizer = build_summarizer()
otp_service = OtpService(sender=send_email if mail_configured() else None)


@app.errorhandler(LedgerError)
def handle_ledger_error(e):
    return jsonify({"status": "error", "error": e.name, "message": str(e)}), e.http_status


@app.errorhandler(UpstreamUnavailable)
def handle_upstream_error(e):
    logger.error(f"Upstream failure: {e}")
    return jsonify({"status": "error", "error": "UpstreamUnavailable", "message": str(e)}), 503


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _present_status(status: dict) -> dict:
    """
    Requester-facing view. Denied and expired requests read the same, so a
    doctor cannot learn why access did not complete.
    """
    state = status["state"]
    body = {"status": "ok", **status}
    if state == "approved":
        body["outcome"] = "granted"
    elif state == "pending":
        body["outcome"] = "waiting"
    else:
        body["outcome"] = "not_granted"
        body["message"] = NOT_GRANTED_MESSAGE
    return body


def _grant_still_open(request_id: str) -> bool:
    try:
        return ledger.snapshot(request_id)["state"] == "approved"
    except NotFound:
        return False


def _schedule_grant_deadline(request_id: str, grant_expires_at: str):
    deadline = parse_iso(grant_expires_at)
    deadline_timer.schedule(
        request_id,
        deadline,
        action=lambda: ledger.expire_if_due(request_id, deadline),
        guard=lambda: _grant_still_open(request_id),
    )


def _permitted(permission: str) -> bool:
    """Anonymous callers pass; signed-in callers need the permission for their role."""
    role = getattr(g, "user_role", None)
    return role is None or has_permission(role, permission)


def _requesting_doctor(supplied):
    """
    Identity a new request is filed under. With a doctor token it is always
    the token subject, so the same doctor can poll the request afterwards.
    Returns (identity, error_response).
    """
    if g.user_role != "DOCTOR":
        return supplied, None
    if supplied and supplied != g.user_id:
        return None, (jsonify({
            "status": "error",
            "message": "doctorIdentity does not match the signed-in doctor.",
        }), 403)
    return g.user_id, None


def _owner_check(request_id: str):
    """Patients may only decide on their own requests; doctors never decide."""
    role = getattr(g, "user_role", None)
    if not _permitted("decide_access_request"):
        return jsonify({"status": "error", "message": f"{role.title()}s cannot decide access requests."}), 403
    if role == "PATIENT":
        record = ledger.snapshot(request_id)
        if record["patient_id"] != getattr(g, "patient_id", None):
            return jsonify({"status": "error", "message": "Request is addressed to another patient."}), 403
    return None


# ─────────────────────────────────────────────────────────────────────────────
# ── AUTH ROUTES ───────────────────────────────────────────────────────────────
# ─────────────────────────────────────────────────────────────────────────────

@app.route('/api/send-otp', methods=['POST'])
def send_otp():
    """Send a 6-digit verification code to the given e-mail address."""
    data = request.get_json(force=True, silent=True) or {}
    email = (data.get("email") or "").strip()
    if not email:
        return jsonify({"status": "error", "error": "Email is required"}), 400

    try:
        otp_service.issue(email)
    except UpstreamUnavailable:
        return jsonify({"status": "error", "error": "Failed to send OTP"}), 502

    if otp_service.sender is None:
        return jsonify({"status": "ok", "message": "OTP generated (check server logs)"})
    return jsonify({"status": "ok", "message": "OTP sent"})


@app.route('/api/verify-otp', methods=['POST'])
def verify_otp():
    """
    Verify an OTP and issue a role token.
    Body: { email, otp, role? (PATIENT | DOCTOR) }
    """
    data = request.get_json(force=True, silent=True) or {}
    email = (data.get("email") or "").strip()
    otp = str(data.get("otp") or "").strip()
    role = (data.get("role") or "PATIENT").upper()
    if not email or not otp:
        return jsonify({"status": "error", "error": "Email and otp required"}), 400
    if role not in ("PATIENT", "DOCTOR"):
        return jsonify({"status": "error", "error": "Invalid role"}), 400

    if not otp_service.verify(email, otp):
        return jsonify({"status": "error", "error": "Invalid or expired OTP"}), 400

    patient_id = None
    is_new_patient = True
    if role == "PATIENT":
        try:
            patient = database.find_patient_by_email(email)
            if patient and patient.get("id"):
                is_new_patient = False
                patient_id = patient.get("patient_id")
        except UpstreamUnavailable as e:
            # Assume a new patient so the flow can continue
            logger.warning(f"Could not check patient status: {e}")

    token = generate_token(email, role, patient_id=patient_id)
    return jsonify({
        "status": "ok",
        "message": "Verified",
        "email": email,
        "role": role,
        "isNewPatient": is_new_patient,
        "patientId": patient_id,
        "token": token,
    })


@app.route('/api/complete-registration', methods=['POST'])
def complete_registration():
    """Create the patient row after verification. Body: { userId, email, fullName? }"""
    data = request.get_json(force=True, silent=True) or {}
    user_id = data.get("userId")
    email = data.get("email")
    if not user_id or not email:
        return jsonify({"status": "error", "error": "Missing required user details"}), 400

    result = database.register_patient(user_id, email, data.get("fullName", ""))
    message = "Patient registered" if result["created"] else "Patient already registered"
    return jsonify({
        "status": "ok",
        "message": message,
        "patientId": result["patient_id"],
        "token": generate_token(email, "PATIENT", name=data.get("fullName", ""), patient_id=result["patient_id"]),
    })


@app.route('/api/auth/login', methods=['POST'])
def auth_login():
    """
    Issue a role-scoped JWT.
    Body: { user_id, role, name, patient_id? }

    Development helper — production logins go through /api/verify-otp.
    """
    data = request.get_json(force=True, silent=True) or {}
    user_id = data.get("user_id")
    role = (data.get("role") or "PATIENT").upper()
    name = data.get("name", "")
    patient_id = data.get("patient_id")

    if not user_id:
        return jsonify({"status": "error", "message": "user_id required"}), 400
    if role not in ROLE_PERMISSIONS:
        return jsonify({"status": "error", "message": "Invalid role"}), 400
    if role == "PATIENT" and not is_valid_patient_id(patient_id):
        return jsonify({"status": "error", "message": "Patients must supply a valid patient_id"}), 400

    token = generate_token(user_id, role, name, patient_id=patient_id)
    return jsonify({
        "status": "ok",
        "token": token,
        "user_id": user_id,
        "role": role,
        "name": name,
        "permissions": sorted(ROLE_PERMISSIONS.get(role, [])),
    })


@app.route('/api/auth/verify', methods=['POST'])
def auth_verify():
    """Verify a token and return its payload."""
    data = request.get_json(force=True, silent=True) or {}
    token = data.get("token") or request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        return jsonify({"status": "error", "message": "No token provided"}), 400
    payload = decode_token(token)
    if not payload:
        return jsonify({"status": "error", "message": "Invalid or expired token"}), 401
    return jsonify({"status": "ok", "payload": payload})


# ─────────────────────────────────────────────────────────────────────────────
# ── ACCESS REQUEST ROUTES ─────────────────────────────────────────────────────
# ─────────────────────────────────────────────────────────────────────────────

def _create_request(doctor_identity: str, patient_id: str):
    request_id = ledger.create(doctor_identity, patient_id)
    notified = notify_patient_of_request(database.fetch_patient(patient_id), ledger.snapshot(request_id))
    return jsonify({
        "status": "ok",
        "requestId": request_id,
        "state": "pending",
        "patientNotified": notified,
    }), 201


@app.route('/api/access-requests', methods=['POST'])
@app.route('/api/request-patient-access', methods=['POST'])
@optional_auth
def create_access_request():
    """
    Doctor asks for access to a patient's records.
    Body: { doctorIdentity, patientId }  (doctorIdentity defaults to the doctor token subject)
    """
    if not _permitted("request_access"):
        return jsonify({"status": "error", "message": "Patients cannot open access requests."}), 403
    data = request.get_json(force=True, silent=True) or {}
    doctor_identity, rejected = _requesting_doctor(data.get("doctorIdentity"))
    if rejected:
        return rejected
    return _create_request(doctor_identity, data.get("patientId"))


@app.route('/api/access-requests/scan', methods=['POST'])
@optional_auth
def scan_to_treat():
    """
    Scan-to-treat: multipart `file` holds a photo of the patient's QR code,
    or a JSON body { image: <data URL>, doctorIdentity } from the camera view.
    The QR carries either the bare patient id or a profile bundle with patientId.
    """
    if not _permitted("scan_to_treat"):
        return jsonify({"status": "error", "message": "Patients cannot open access requests."}), 403

    if 'file' in request.files:
        image_bytes = request.files['file'].read()
        supplied_doctor = request.form.get("doctorIdentity")
    else:
        data = request.get_json(force=True, silent=True) or {}
        if not isinstance(data.get("image"), str) or not data["image"]:
            return jsonify({"status": "error", "message": "No QR image uploaded."}), 400
        try:
            image_bytes = data_url_to_bytes(data["image"])
        except ValueError:
            return jsonify({"status": "error", "message": "Image must be a base64 data URL."}), 400
        supplied_doctor = data.get("doctorIdentity")

    doctor_identity, rejected = _requesting_doctor(supplied_doctor)
    if rejected:
        return rejected

    try:
        decoded = decode_qr(image_bytes)
    except ValueError as e:
        return jsonify({"status": "error", "message": str(e)}), 400

    patient_id = decoded
    if decoded.startswith("{"):
        try:
            bundle = json.loads(decoded)
            patient_id = bundle.get("patientId") or bundle.get("patient_id") or ""
        except ValueError:
            return jsonify({"status": "error", "message": "Unreadable profile bundle."}), 400

    return _create_request(doctor_identity, patient_id)


@app.route('/api/access-requests', methods=['GET'])
@app.route('/api/check-access-requests', methods=['GET'])
@optional_auth
def list_pending_requests():
    """Oldest undecided request addressed to ?patientId= (patients: their own)."""
    patient_id = request.args.get("patientId") or g.patient_id
    if not patient_id:
        return jsonify({"status": "error", "message": "patientId required"}), 400
    if g.user_role == "PATIENT" and patient_id != g.patient_id:
        return jsonify({"status": "error", "message": "Patients may only list their own requests."}), 403

    pending = ledger.list_pending_for(patient_id)
    return jsonify({"status": "ok", "request": pending.to_dict() if pending else None})


def _decide(request_id: str, data: dict):
    denied = _owner_check(request_id)
    if denied:
        return denied

    decision = data.get("decision")
    if decision not in ("approved", "denied"):
        return jsonify({"status": "error", "message": "decision must be 'approved' or 'denied'"}), 400

    record = ledger.decide(request_id, decision, data.get("payload"))
    if record["state"] == "approved":
        _schedule_grant_deadline(request_id, record["grant_expires_at"])

    return jsonify({
        "status": "ok",
        "ok": True,
        "state": record["state"],
        "grantExpiresAt": record["grant_expires_at"],
    })


@app.route('/api/access-requests/<request_id>/decision', methods=['POST'])
@optional_auth
def decide_access_request(request_id):
    """Patient approves (with payload) or denies. Body: { decision, payload? }"""
    return _decide(request_id, request.get_json(force=True, silent=True) or {})


@app.route('/api/approve-access-request', methods=['POST'])
@optional_auth
def approve_access_request():
    """Legacy form: { requestId, decision? = approved, payload? }"""
    data = request.get_json(force=True, silent=True) or {}
    request_id = data.get("requestId")
    if not request_id:
        return jsonify({"status": "error", "message": "requestId required"}), 400
    return _decide(request_id, {"decision": data.get("decision", "approved"), "payload": data.get("payload")})


@app.route('/api/access-requests/<request_id>/revoke', methods=['POST'])
@optional_auth
def revoke_access_request(request_id):
    """Patient ends an approved grant before its window closes."""
    denied = _owner_check(request_id)
    if denied:
        return denied

    record = ledger.revoke(request_id)
    deadline_timer.cancel(request_id)
    return jsonify({"status": "ok", "ok": True, "state": record["state"]})


def _poll(request_id: str):
    if g.user_role == "DOCTOR" and ledger.snapshot(request_id)["doctor_identity"] != g.user_id:
        return jsonify({"status": "error", "message": "Request belongs to another doctor."}), 403
    return jsonify(_present_status(ledger.get_status(request_id)))


@app.route('/api/access-requests/<request_id>', methods=['GET'])
@optional_auth
def poll_access_request(request_id):
    """Idempotent status poll. Payload only while the grant window is open."""
    return _poll(request_id)


@app.route('/api/check-request-status', methods=['GET'])
@optional_auth
def check_request_status():
    request_id = request.args.get("requestId")
    if not request_id:
        return jsonify({"status": "error", "message": "requestId required"}), 400
    return _poll(request_id)


@app.route('/api/admin/access-requests', methods=['GET'])
@require_role('ADMIN')
def admin_access_requests():
    """All ledger records (no payloads)."""
    records = ledger.all_requests()
    return jsonify({"status": "ok", "count": len(records), "requests": records})


# ─────────────────────────────────────────────────────────────────────────────
# ── ZERO-TRUST GATEKEEPER / EMERGENCY OVERRIDE ────────────────────────────────
# ─────────────────────────────────────────────────────────────────────────────

@app.route('/api/vault/unlock', methods=['POST'])
@optional_auth
def vault_unlock():
    """
    Record the reason for opening a vault document, then unlock it.
    Body: { recordHash, reason }
    The unlock waits at most AUDIT_WAIT_S for the audit receipt (audit: null when
    the sink is slow or down).
    """
    data = request.get_json(force=True, silent=True) or {}
    record_hash = data.get("recordHash")
    reason = (data.get("reason") or "").strip()
    if not record_hash:
        return jsonify({"status": "error", "message": "recordHash required"}), 400
    if len(reason) < 5:
        return jsonify({"status": "error", "message": "Please provide a valid reason (min 5 characters)."}), 400

    entry = audit_writer.write(record_hash, reason, actor=g.user_id)
    return jsonify({"status": "ok", "unlocked": True, "recordHash": record_hash, "audit": entry})


@app.route('/api/emergency/override', methods=['POST'])
@require_role('DOCTOR', 'ADMIN')
def emergency_override():
    """
    Release the Life Packet (blood type, allergies, emergency contact) without
    patient consent. Body: { patientId, legalAccepted }
    """
    data = request.get_json(force=True, silent=True) or {}
    patient_id = data.get("patientId")
    if not is_valid_patient_id(patient_id):
        return jsonify({"status": "error", "message": "Valid patientId required"}), 400
    if data.get("legalAccepted") is not True:
        return jsonify({"status": "error", "message": "You must accept legal responsibility."}), 400

    packet = database.fetch_life_packet(patient_id)
    if not packet:
        return jsonify({"status": "error", "message": "Life packet not found"}), 404

    entry = audit_writer.write(f"EMERGENCY_{patient_id}", "Emergency Override - Life Packet", actor=g.user_id)
    logger.warning(f"Emergency override by {g.user_id} for {patient_id}")
    return jsonify({"status": "ok", "patientId": patient_id, "lifePacket": packet, "audit": entry})


@app.route('/api/audit', methods=['GET'])
@require_role('ADMIN')
def audit_log():
    """Recent access-reason entries from the configured audit sink."""
    try:
        limit = min(int(request.args.get("limit", 100)), 500)
    except ValueError:
        return jsonify({"status": "error", "message": "limit must be an integer"}), 400
    return jsonify({"status": "ok", "logs": audit_sink.recent(limit)})


# ─────────────────────────────────────────────────────────────────────────────
# ── SUMMARIZER / QR ROUTES ────────────────────────────────────────────────────
# ─────────────────────────────────────────────────────────────────────────────

@app.route('/api/summarize', methods=['POST'])
def summarize_notes():
    """Body: { text } — clinical note to summarize."""
    data = request.get_json(force=True, silent=True) or {}
    text = (data.get("text") or "").strip()
    if not text:
        return jsonify({"status": "error", "message": "No clinical text provided."}), 400

    summary = summarizer.summarize(text)
    engine = getattr(summarizer, "last_engine", None) or summarizer.engine
    return jsonify({"status": "ok", "summary": summary, "engine": engine})


@app.route('/api/qr/<patient_id>', methods=['GET'])
def patient_qr(patient_id):
    if not is_valid_patient_id(patient_id):
        return jsonify({"status": "error", "message": "Invalid patient id"}), 400
    return jsonify({"status": "ok", "patientId": patient_id, "qr": encode_qr(patient_id)})


@app.route('/api/qr/profile', methods=['POST'])
def profile_qr():
    """Body: { profile } — profile bundle to carry between devices."""
    data = request.get_json(force=True, silent=True) or {}
    profile = data.get("profile")
    if not isinstance(profile, dict) or not profile:
        return jsonify({"status": "error", "message": "profile object required"}), 400
    return jsonify({"status": "ok", "qr": encode_profile_bundle(profile)})


# ─────────────────────────────────────────────────────────────────────────────
# ── SYSTEM ROUTES ─────────────────────────────────────────────────────────────
# ─────────────────────────────────────────────────────────────────────────────

@app.route('/api/health', methods=['GET'])
def health_check():
    return jsonify({
        "status": "ok",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z"),
        "version": "1.0.0",
        "services": {
            "supabase":       database.SUPABASE_ENABLED,
            "smtp":           mail_configured(),
            "audit_sink":     type(audit_sink).__name__,
            "audit_backlog":  audit_writer.pending(),
            "summarizer":     summarizer.engine,
            "expiry_sweeper": sweeper.running,
            "ledger_size":    len(ledger),
        }
    })


# ─────────────────────────────────────────────────────────────────────────────
# ── FRONTEND STATIC SERVING (must be last so /api/* routes take priority) ────
# Flask serves the built Vite/React app from project-root/frontend/dist/.
# ─────────────────────────────────────────────────────────────────────────────
import mimetypes as _mt
_mt.add_type('application/javascript', '.js')
_mt.add_type('text/css', '.css')

_DIST = os.path.join(os.path.dirname(_DIR), 'frontend', 'dist')

@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def serve_frontend(path):
    """Serve React SPA. All non-API paths fall through to index.html."""
    if path.startswith('api/'):
        return jsonify({"status": "error", "message": "Not found"}), 404

    if not os.path.isdir(_DIST):
        return (
            "<h2 style='font-family:sans-serif;padding:2rem'>Frontend not built.</h2>"
            "<p>Run <code>npm run build</code> in the frontend folder, then refresh.</p>",
            200
        )

    # Resolve file safely (prevent directory traversal)
    candidate = os.path.realpath(os.path.join(_DIST, path)) if path else None
    if candidate and candidate.startswith(os.path.realpath(_DIST)) and os.path.isfile(candidate):
        return send_file(candidate)

    return send_file(os.path.join(_DIST, 'index.html'))


# ─────────────────────────────────────────────────────────────────────────────
if __name__ == '__main__':
    from run_server import main
    main()
