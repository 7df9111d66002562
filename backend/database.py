"""
backend/database.py
Supabase client wrapper — hosted patient records, access-request mirror and
audit log for JeevanConnect.
Reads degrade to empty results when Supabase is not configured; writes that a
caller depends on raise UpstreamUnavailable.
"""
import os
import random
import logging
from datetime import datetime, timezone
from typing import Optional

from errors import UpstreamUnavailable

logger = logging.getLogger("jeevan.database")

# ── Supabase client (optional) ────────────────────────────────────────────────
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")  # Use service key for backend

_supabase = None

def get_client():
    global _supabase
    if _supabase:
        return _supabase
    if not SUPABASE_URL or not SUPABASE_KEY:
        return None
    try:
        from supabase import create_client
        _supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client initialized successfully.")
        return _supabase
    except Exception as e:
        logger.error(f"Supabase init failed: {e}")
        return None

SUPABASE_ENABLED = bool(SUPABASE_URL and SUPABASE_KEY)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── PATIENTS ──────────────────────────────────────────────────────────────────

def find_patient_by_email(email: str) -> Optional[dict]:
    """Look up a registered patient by e-mail. Raises if Supabase errors out."""
    sb = get_client()
    if not sb:
        raise UpstreamUnavailable("supabase", "not configured")
    try:
        res = sb.table("patients").select("id, email, patient_id").eq("email", email).limit(1).execute()
        return res.data[0] if res.data else None
    except Exception as e:
        logger.error(f"Patient lookup error: {e}")
        raise UpstreamUnavailable("supabase", str(e)) from e


def fetch_patient(patient_id: str) -> Optional[dict]:
    """Fetch the contact details of a patient by public id (P-YYYY-NNN)."""
    sb = get_client()
    if not sb:
        return None
    try:
        res = (
            sb.table("patients")
            .select("id, patient_id, email, phone, full_name")
            .eq("patient_id", patient_id)
            .limit(1)
            .execute()
        )
        return res.data[0] if res.data else None
    except Exception as e:
        logger.error(f"Patient fetch error: {e}")
        return None


def generate_patient_id(year: Optional[int] = None) -> str:
    year = year or datetime.now(timezone.utc).year
    return f"P-{year}-{random.randint(100, 999)}"


def register_patient(user_id: str, email: str, full_name: str = "") -> dict:
    """
    Create the patient row for an authenticated user, or return the existing one.
    Returns {"patient_id": ..., "created": bool}.
    """
    sb = get_client()
    if not sb:
        raise UpstreamUnavailable("supabase", "not configured")
    try:
        existing = sb.table("patients").select("patient_id").eq("id", user_id).limit(1).execute()
        if existing.data:
            return {"patient_id": existing.data[0]["patient_id"], "created": False}

        patient_id = generate_patient_id()
        res = sb.table("patients").insert({
            "id":         user_id,
            "email":      email,
            "patient_id": patient_id,
            "full_name":  full_name or "",
            "created_at": _now_iso(),
        }).execute()
        if res.data:
            patient_id = res.data[0].get("patient_id", patient_id)
        logger.info(f"Patient registered: {patient_id} ({email})")
        return {"patient_id": patient_id, "created": True}
    except Exception as e:
        logger.error(f"Patient registration error: {e}")
        raise UpstreamUnavailable("supabase", str(e)) from e


def fetch_life_packet(patient_id: str) -> Optional[dict]:
    """Minimal emergency dataset: blood type, allergies, emergency contact."""
    sb = get_client()
    if not sb:
        return None
    try:
        res = (
            sb.table("patients")
            .select("patient_id, full_name, blood_type, allergies, emergency_contact_name, emergency_contact_phone")
            .eq("patient_id", patient_id)
            .limit(1)
            .execute()
        )
        return res.data[0] if res.data else None
    except Exception as e:
        logger.error(f"Life packet fetch error: {e}")
        raise UpstreamUnavailable("supabase", str(e)) from e


# ── ACCESS REQUESTS ───────────────────────────────────────────────────────────

def store_access_request(record: dict) -> bool:
    """Upsert a ledger record (never the payload itself) to Supabase."""
    sb = get_client()
    if not sb:
        return False
    try:
        row = {
            "request_id":       record.get("request_id"),
            "doctor_identity":  record.get("doctor_identity"),
            "patient_id":       record.get("patient_id"),
            "state":            record.get("state"),
            "created_at":       record.get("created_at"),
            "decided_at":       record.get("decided_at"),
            "grant_expires_at": record.get("grant_expires_at"),
            "payload_ref":      record.get("payload_ref"),
            "expiry_reason":    record.get("expiry_reason"),
        }
        sb.table("access_requests").upsert(row).execute()
        return True
    except Exception as e:
        logger.error(f"Access request store error: {e}")
        return False


# ── AUDIT LOG ──────────────────────────────────────────────────────────────────

def append_audit(event_type: str, patient_id: str, details: dict = None) -> dict:
    """Write an audit entry to Supabase. Raises UpstreamUnavailable on failure."""
    sb = get_client()
    if not sb:
        raise UpstreamUnavailable("supabase", "not configured")
    entry = {
        "event_type": event_type,
        "patient_id": patient_id,
        "details":    details or {},
        "logged_at":  _now_iso(),
    }
    try:
        sb.table("audit_log").insert(entry).execute()
        return entry
    except Exception as e:
        logger.error(f"Audit log error: {e}")
        raise UpstreamUnavailable("supabase", str(e)) from e


def fetch_audit_log(limit: int = 200) -> list:
    """Fetch recent audit events."""
    sb = get_client()
    if not sb:
        return []
    try:
        res = (
            sb.table("audit_log")
            .select("*")
            .order("logged_at", desc=True)
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.error(f"Audit fetch error: {e}")
        return []
