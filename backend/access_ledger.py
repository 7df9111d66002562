"""
JeevanConnect — Access Request Ledger
======================================
Single source of truth for doctor → patient access requests.

Request lifecycle:
  1.  Doctor scans the patient QR / enters the patient id → request created (pending)
  2.  Patient polls, sees the oldest pending request addressed to them
  3.  Patient approves (releasing a data bundle) or denies, exactly once
  4.  Approved grants stay readable until grant_expires_at, then expire
  5.  Undecided requests expire after the waiting window
  6.  A patient may revoke an unexpired grant early (revoke)
  7.  Terminal records are purged after the retention window

Safety constraints:
  - decide() is atomic: concurrent decisions yield one success, the rest AlreadyDecided
  - reads never mutate; the payload is unreachable after its deadline even
    before the sweep runs
  - sweeping an already-expired record is a no-op
"""

import os
import re
import uuid
import logging
import datetime
import threading
from dataclasses import dataclass, asdict, replace
from typing import Callable, Literal, Optional

from errors import AlreadyDecided, ExpiredRequest, InvalidPatient, NoActiveGrant, NotFound, PayloadRequired

logger = logging.getLogger("jeevan.access_ledger")

# ── Timing (product decisions, overridable from env) ──────────────────────────
WAITING_WINDOW_S = int(os.environ.get("ACCESS_WAITING_WINDOW_S", 120))
GRANT_DURATION_S = int(os.environ.get("ACCESS_GRANT_DURATION_S", 900))
RETENTION_S      = int(os.environ.get("ACCESS_RETENTION_S", 86400))

# Patient ids are issued at registration as P-<year>-<digits>
PATIENT_ID_PATTERN = re.compile(r"^P-\d{4}-\d{3,}$")

RequestState = Literal["pending", "approved", "denied", "expired"]
Decision = Literal["approved", "denied"]
ExpiryReason = Literal["timeout", "grant_elapsed", "revoked"]

TERMINAL_STATES = ("denied", "expired")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


def is_valid_patient_id(patient_id) -> bool:
    return isinstance(patient_id, str) and bool(PATIENT_ID_PATTERN.match(patient_id.strip()))


@dataclass
class AccessRequest:
    request_id: str
    doctor_identity: str
    patient_id: str
    state: RequestState
    created_at: datetime.datetime
    decided_at: Optional[datetime.datetime] = None
    grant_expires_at: Optional[datetime.datetime] = None
    payload_ref: Optional[str] = None
    payload: Optional[dict] = None
    expiry_reason: Optional[ExpiryReason] = None
    closed_at: Optional[datetime.datetime] = None

    def to_dict(self, include_payload: bool = False) -> dict:
        data = asdict(self)
        for key in ("created_at", "decided_at", "grant_expires_at", "closed_at"):
            data[key] = iso(data[key])
        if not include_payload:
            data.pop("payload", None)
        return data


class AccessLedger:
    """
    In-process ledger of AccessRequest records guarded by a single lock.

    on_change(record_dict) is called after every transition, outside the
    lock; it mirrors records to Supabase and writes audit events.
    """

    def __init__(
        self,
        waiting_window_s: int = WAITING_WINDOW_S,
        grant_duration_s: int = GRANT_DURATION_S,
        retention_s: int = RETENTION_S,
        clock: Callable[[], datetime.datetime] = _utcnow,
        on_change: Optional[Callable[[dict], None]] = None,
    ):
        self.waiting_window = datetime.timedelta(seconds=waiting_window_s)
        self.grant_duration = datetime.timedelta(seconds=grant_duration_s)
        self.retention = datetime.timedelta(seconds=retention_s)
        self.clock = clock
        self.on_change = on_change
        self._requests: dict = {}
        self._lock = threading.Lock()

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _now(self, now: Optional[datetime.datetime] = None) -> datetime.datetime:
        return now or self.clock()

    def _waiting_expired(self, req: AccessRequest, now: datetime.datetime) -> bool:
        return req.state == "pending" and now >= req.created_at + self.waiting_window

    def _grant_elapsed(self, req: AccessRequest, now: datetime.datetime) -> bool:
        return req.state == "approved" and req.grant_expires_at is not None and now >= req.grant_expires_at

    def _expire(self, req: AccessRequest, reason: ExpiryReason, now: datetime.datetime) -> None:
        req.state = "expired"
        req.expiry_reason = reason
        req.grant_expires_at = None
        req.payload = None
        req.closed_at = now

    def _get(self, request_id: str) -> AccessRequest:
        req = self._requests.get(request_id)
        if req is None:
            raise NotFound(f"Access request {request_id} not found")
        return req

    def _notify(self, records: list) -> None:
        if not self.on_change:
            return
        for record in records:
            try:
                self.on_change(record)
            except Exception as e:
                logger.error(f"Ledger change hook failed for {record.get('request_id')}: {e}")

    # ── Operations ────────────────────────────────────────────────────────────

    def create(self, doctor_identity: str, patient_id: str) -> str:
        """Open a pending request. Never fails for a well-formed patient id."""
        if not is_valid_patient_id(patient_id):
            raise InvalidPatient(f"Unknown patient identifier format: {patient_id!r}")
        if not doctor_identity or not str(doctor_identity).strip():
            raise InvalidPatient("doctorIdentity is required")

        now = self._now()
        req = AccessRequest(
            request_id=str(uuid.uuid4()),
            doctor_identity=str(doctor_identity).strip(),
            patient_id=patient_id.strip(),
            state="pending",
            created_at=now,
        )
        with self._lock:
            self._requests[req.request_id] = req
            snapshot = req.to_dict()

        logger.info(f"Access requested: request_id={req.request_id}, doctor={req.doctor_identity}, patient={req.patient_id}")
        self._notify([snapshot])
        return req.request_id

    def decide(self, request_id: str, decision: Decision, payload: Optional[dict] = None) -> dict:
        """
        Record the patient's decision. Returns the updated record (without payload).
        Exactly one decision per request; use revoke() to end a grant early.
        """
        if decision not in ("approved", "denied"):
            raise ValueError(f"Invalid decision: {decision!r}")

        expired_snapshot = None
        with self._lock:
            req = self._get(request_id)
            now = self._now()

            if self._waiting_expired(req, now):
                self._expire(req, "timeout", now)
                expired_snapshot = req.to_dict()
            elif req.state == "pending":
                if decision == "approved" and payload is None:
                    raise PayloadRequired("Approving a request requires the data bundle payload")
                req.state = decision
                req.decided_at = now
                if decision == "approved":
                    req.payload = payload
                    req.payload_ref = f"bundle-{uuid.uuid4().hex[:12]}"
                    req.grant_expires_at = now + self.grant_duration
                else:
                    req.closed_at = now
                snapshot = req.to_dict()
            elif req.state == "expired" and req.decided_at is None:
                raise ExpiredRequest(f"Access request {request_id} expired before a decision was made")
            else:
                raise AlreadyDecided(f"Access request {request_id} was already decided ({req.state})")

        if expired_snapshot:
            logger.info(f"Access request expired on late decision: {request_id}")
            self._notify([expired_snapshot])
            raise ExpiredRequest(f"Access request {request_id} expired before a decision was made")

        logger.info(f"Access request {decision}: request_id={request_id}, grant_expires_at={snapshot['grant_expires_at']}")
        self._notify([snapshot])
        return snapshot

    def revoke(self, request_id: str) -> dict:
        """
        Patient ends an approved grant before its deadline. The payload is
        dropped at once and the record becomes expired (reason "revoked").
        """
        with self._lock:
            req = self._get(request_id)
            now = self._now()
            if req.state == "approved" and not self._grant_elapsed(req, now):
                self._expire(req, "revoked", now)
                snapshot = req.to_dict()
            elif req.state == "approved" or req.state == "expired" or self._waiting_expired(req, now):
                raise ExpiredRequest(f"Access request {request_id} has no live grant to revoke")
            else:
                raise NoActiveGrant(f"Access request {request_id} is {req.state}; only approved grants can be revoked")

        logger.info(f"Access grant revoked early: {request_id}")
        self._notify([snapshot])
        return snapshot

    def get_status(self, request_id: str, now: Optional[datetime.datetime] = None) -> dict:
        """
        Side-effect-free read of the effective state at `now`.
        Payload is present only while approved and before grant_expires_at.
        """
        with self._lock:
            req = self._get(request_id)
            now = self._now(now)
            state = req.state
            grant_expires_at = req.grant_expires_at
            payload = req.payload

        if state == "pending" and now >= req.created_at + self.waiting_window:
            state = "expired"
        elif state == "approved" and grant_expires_at is not None and now >= grant_expires_at:
            state = "expired"

        status = {"requestId": request_id, "state": state}
        if state == "approved":
            status["grantExpiresAt"] = iso(grant_expires_at)
            status["payload"] = payload
        return status

    def list_pending_for(self, patient_id: str, now: Optional[datetime.datetime] = None) -> Optional[AccessRequest]:
        """Oldest undecided, unexpired request addressed to patient_id, or None."""
        patient_id = (patient_id or "").strip()
        with self._lock:
            now = self._now(now)
            candidates = [
                r for r in self._requests.values()
                if r.patient_id == patient_id and r.state == "pending" and not self._waiting_expired(r, now)
            ]
            if not candidates:
                return None
            oldest = min(candidates, key=lambda r: r.created_at)
            return replace(oldest)

    def expire_if_due(self, request_id: str, expected_grant_expires_at: Optional[datetime.datetime] = None) -> bool:
        """
        Deadline action for one grant. Acts only if the ledger still holds the
        same approved grant and it has elapsed.
        """
        with self._lock:
            req = self._requests.get(request_id)
            if req is None or req.state != "approved":
                return False
            if expected_grant_expires_at is not None and req.grant_expires_at != expected_grant_expires_at:
                return False
            now = self._now()
            if not self._grant_elapsed(req, now):
                return False
            self._expire(req, "grant_elapsed", now)
            snapshot = req.to_dict()

        logger.info(f"Access grant elapsed: {request_id}")
        self._notify([snapshot])
        return True

    def sweep(self, now: Optional[datetime.datetime] = None) -> int:
        """
        Expire stale pending requests and elapsed grants, purge old terminal
        records. Returns the number of records that changed state.
        """
        changed = []
        purged = 0
        with self._lock:
            now = self._now(now)
            for request_id, req in list(self._requests.items()):
                if self._waiting_expired(req, now):
                    self._expire(req, "timeout", now)
                    changed.append(req.to_dict())
                elif self._grant_elapsed(req, now):
                    self._expire(req, "grant_elapsed", now)
                    changed.append(req.to_dict())
                elif req.state in TERMINAL_STATES and req.closed_at and now >= req.closed_at + self.retention:
                    del self._requests[request_id]
                    purged += 1

        if changed or purged:
            logger.info(f"Ledger sweep: {len(changed)} expired, {purged} purged")
        self._notify(changed)
        return len(changed)

    def snapshot(self, request_id: str) -> dict:
        with self._lock:
            return self._get(request_id).to_dict()

    def all_requests(self) -> list:
        with self._lock:
            records = sorted(self._requests.values(), key=lambda r: r.created_at)
            return [r.to_dict() for r in records]

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)
