"""
backend/access_client.py
Requesting-side client for the access-grant protocol.

The doctor's side creates a request, polls its status on a fixed cadence and
stops at the first terminal state. Approved payloads are kept in GrantCache,
encrypted with a per-grant key and destroyed when the grant deadline elapses.

Usage:
  python access_client.py --doctor dr.rao@clinic.in --patient P-2026-047
  python access_client.py --pending P-2026-047          (patient side)
"""

import os
import sys
import json
import time
import logging
import argparse
import datetime
import threading
from typing import Callable, Optional

import requests

from grant_timer import DeadlineTimer
from vault_crypto import AesGcmEncryptor

logger = logging.getLogger("jeevan.access_client")

BACKEND_URL = os.environ.get("JEEVAN_BACKEND_URL", "http://localhost:5000")
POLL_INTERVAL_S = float(os.environ.get("ACCESS_POLL_INTERVAL_S", 3))
TERMINAL = ("approved", "denied", "expired")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


class AccessClientError(Exception):
    def __init__(self, status_code: int, error: str, message: str):
        self.status_code = status_code
        self.error = error
        super().__init__(f"HTTP {status_code} {error}: {message}")


# ── Grant cache ───────────────────────────────────────────────────────────────

class GrantCache:
    """
    Client-side copy of approved payloads. The ledger stays authoritative:
    entries are evicted on a terminal poll, on get() past the deadline, and by
    a one-shot deadline action.
    """

    def __init__(self, encryptor=None, timer: Optional[DeadlineTimer] = None,
                 clock: Callable[[], datetime.datetime] = _utcnow):
        self.encryptor = encryptor or AesGcmEncryptor()
        self.clock = clock
        self.timer = timer or DeadlineTimer(clock=clock)
        self._entries: dict = {}
        self._lock = threading.Lock()

    def store(self, request_id: str, payload: dict, grant_expires_at: datetime.datetime) -> None:
        key = self.encryptor.generate_key()
        ciphertext, iv = self.encryptor.encrypt(json.dumps(payload).encode("utf-8"), key)
        with self._lock:
            self._entries[request_id] = {
                "ciphertext": ciphertext,
                "iv": iv,
                "key": key,
                "expires_at": grant_expires_at,
            }
        self.timer.schedule(
            request_id,
            grant_expires_at,
            action=lambda: self.evict(request_id),
            guard=lambda: self._holds(request_id, grant_expires_at),
        )

    def _holds(self, request_id: str, expires_at: datetime.datetime) -> bool:
        with self._lock:
            entry = self._entries.get(request_id)
            return entry is not None and entry["expires_at"] == expires_at

    def get(self, request_id: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return None
            if self.clock() >= entry["expires_at"]:
                del self._entries[request_id]
                return None
        plaintext = self.encryptor.decrypt(entry["ciphertext"], entry["key"], entry["iv"])
        return json.loads(plaintext.decode("utf-8"))

    def evict(self, request_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(request_id, None) is not None
        self.timer.cancel(request_id)
        if removed:
            logger.info(f"Cached grant destroyed: {request_id}")
        return removed

    def apply_status(self, request_id: str, status: dict) -> None:
        """Mirror one poll result into the cache."""
        if status.get("state") == "approved" and status.get("payload") is not None:
            expires_at = parse_iso(status.get("grantExpiresAt"))
            if not self._holds(request_id, expires_at):
                self.store(request_id, status["payload"], expires_at)
        else:
            self.evict(request_id)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._entries


# ── HTTP client ───────────────────────────────────────────────────────────────

class AccessClient:
    def __init__(self, base_url: str = BACKEND_URL, token: Optional[str] = None,
                 poll_interval: float = POLL_INTERVAL_S, cache: Optional[GrantCache] = None,
                 session=None, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.cache = cache if cache is not None else GrantCache()
        self.session = session or requests.Session()
        self.sleep = sleep
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _call(self, method: str, path: str, **kwargs) -> dict:
        resp = self.session.request(method, self.base_url + path, timeout=10, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            raise AccessClientError(resp.status_code, body.get("error", "HTTPError"), body.get("message", resp.text[:200]))
        return body

    def request_access(self, doctor_identity: str, patient_id: str) -> str:
        body = self._call("POST", "/api/access-requests", json={"doctorIdentity": doctor_identity, "patientId": patient_id})
        return body["requestId"]

    def poll_status(self, request_id: str) -> dict:
        status = self._call("GET", f"/api/access-requests/{request_id}")
        self.cache.apply_status(request_id, status)
        return status

    def pending_for(self, patient_id: str) -> Optional[dict]:
        return self._call("GET", "/api/access-requests", params={"patientId": patient_id}).get("request")

    def decide(self, request_id: str, decision: str, payload: Optional[dict] = None) -> dict:
        body = {"decision": decision}
        if payload is not None:
            body["payload"] = payload
        return self._call("POST", f"/api/access-requests/{request_id}/decision", json=body)

    def revoke(self, request_id: str) -> dict:
        """End an approved grant early and drop any payload cached for it."""
        body = self._call("POST", f"/api/access-requests/{request_id}/revoke")
        self.cache.evict(request_id)
        return body

    def wait_for_decision(self, request_id: str, timeout: float = 150.0) -> dict:
        """Poll until a terminal state is observed or `timeout` seconds pass."""
        deadline = time.monotonic() + timeout
        while True:
            status = self.poll_status(request_id)
            if status.get("state") in TERMINAL:
                return status
            if time.monotonic() >= deadline:
                return status
            self.sleep(self.poll_interval)


# ── CLI ───────────────────────────────────────────────────────────────────────

def _run_doctor(client: AccessClient, doctor: str, patient_id: str, timeout: float):
    print(f"\n? JeevanConnect Access Request")
    print(f"  Doctor   : {doctor}")
    print(f"  Patient  : {patient_id}")
    print(f"  Backend  : {client.base_url}")
    print(f"  Polling  : every {client.poll_interval}s\n")

    request_id = client.request_access(doctor, patient_id)
    print(f"  Request  : {request_id} (waiting for patient)")
    status = client.wait_for_decision(request_id, timeout=timeout)

    if status.get("state") == "approved":
        print(f"✅ Access granted until {status.get('grantExpiresAt')}")
        print(json.dumps(client.cache.get(request_id), indent=2))
    else:
        print(f"❌ {status.get('message', 'Access not granted.')}")


def _run_patient(client: AccessClient, patient_id: str):
    req = client.pending_for(patient_id)
    if not req:
        print(f"No pending access requests for {patient_id}.")
        return
    print(f"Pending request {req['request_id']} from {req['doctor_identity']} (created {req['created_at']})")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="JeevanConnect access-request client")
    parser.add_argument("--doctor",   default="",           help="Doctor identity (e-mail or practitioner id)")
    parser.add_argument("--patient",  default="",           help="Patient ID to request access to")
    parser.add_argument("--pending",  default="",           help="Patient ID: show the oldest pending request")
    parser.add_argument("--token",    default="",           help="Bearer token")
    parser.add_argument("--timeout",  type=float, default=150.0, help="Seconds to wait for a decision")
    parser.add_argument("--interval", type=float, default=POLL_INTERVAL_S, help="Seconds between polls")
    parser.add_argument("--backend",  default=BACKEND_URL,  help="Backend URL")
    args = parser.parse_args()

    client = AccessClient(args.backend, token=args.token or None, poll_interval=args.interval)
    try:
        if args.pending:
            _run_patient(client, args.pending)
        elif args.doctor and args.patient:
            _run_doctor(client, args.doctor, args.patient, args.timeout)
        else:
            parser.error("use --doctor with --patient, or --pending")
    except (AccessClientError, requests.RequestException) as e:
        print(f"  Request error: {e}")
        sys.exit(1)
