"""
JeevanConnect — RBAC (Role-Based Access Control)
=================================================
Provides JWT token generation and role-enforcement decorators.

Roles:
  PATIENT — owns a record set, approves or denies incoming access requests
  DOCTOR  — requests access, polls for the decision, may use Emergency Override
  ADMIN   — reads the ledger and audit trail

Usage in Flask routes:
    from rbac import require_role, generate_token, decode_token

    @app.route('/api/admin/access-requests')
    @require_role('ADMIN')
    def admin_requests():
        ...
"""

import os
import functools
import datetime
import logging
from typing import Optional

import jwt as pyjwt

logger = logging.getLogger("jeevan.rbac")

# ── JWT secret (load from env in production) ─────────────────────────────────
JWT_SECRET = os.environ.get("JWT_SECRET", "jeevan-dev-secret-change-in-prod")
JWT_ALGORITHM = "HS256"
TOKEN_TTL_HOURS = 24

VALID_ROLES = {"PATIENT", "DOCTOR", "ADMIN"}

# ── Role definitions ──────────────────────────────────────────────────────────

ROLE_PERMISSIONS = {
    "PATIENT": {
        "read_own_profile",
        "write_own_profile",
        "list_own_requests",
        "decide_access_request",
        "generate_qr",
    },
    "DOCTOR": {
        "request_access",
        "poll_access_status",
        "scan_to_treat",
        "unlock_vault",
        "emergency_override",
        "summarize_notes",
    },
    "ADMIN": {
        "read_own_profile", "write_own_profile", "list_own_requests",
        "decide_access_request", "generate_qr", "request_access",
        "poll_access_status", "scan_to_treat", "unlock_vault",
        "emergency_override", "summarize_notes", "read_audit_logs",
        "read_ledger", "manage_users",
    },
}

# ── Token utilities ───────────────────────────────────────────────────────────

def generate_token(user_id: str, role: str, name: str = "", patient_id: Optional[str] = None) -> str:
    """Generate a signed JWT token. Patients carry their patient_id claim."""
    if role not in VALID_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {VALID_ROLES}")

    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "name": name,
        "iat": now,
        "exp": now + datetime.timedelta(hours=TOKEN_TTL_HOURS),
    }
    if patient_id:
        payload["patient_id"] = patient_id

    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """
    Decode and validate a JWT token.
    Returns payload dict or None if invalid.
    """
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.PyJWTError as e:
        logger.warning(f"Token decode failed: {e}")
        return None


def get_token_from_request(request) -> Optional[str]:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return None


def has_permission(role: str, permission: str) -> bool:
    """Check if a role has a specific permission."""
    return permission in ROLE_PERMISSIONS.get(role, set())


def _bind_identity(payload: Optional[dict]) -> None:
    from flask import g
    if payload:
        g.user_id = payload.get("sub")
        g.user_role = payload.get("role", "")
        g.user_name = payload.get("name", "")
        g.patient_id = payload.get("patient_id")
    else:
        g.user_id = g.user_role = g.user_name = g.patient_id = None


# ── Flask Decorators ──────────────────────────────────────────────────────────

def require_role(*allowed_roles: str):
    """
    Flask route decorator — enforces that the caller has an allowed role.

    Usage:
        @app.route('/api/emergency/override')
        @require_role('DOCTOR', 'ADMIN')
        def override():
            ...
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            from flask import request, jsonify

            token = get_token_from_request(request)
            if not token:
                return jsonify({"status": "error", "message": "Authentication required. Provide Bearer token."}), 401

            payload = decode_token(token)
            if not payload:
                return jsonify({"status": "error", "message": "Invalid or expired token."}), 401

            role = payload.get("role", "")
            if role not in allowed_roles:
                return jsonify({
                    "status": "error",
                    "message": f"Access denied. Required roles: {list(allowed_roles)}. Your role: {role}"
                }), 403

            _bind_identity(payload)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def optional_auth(fn):
    """
    Decorator that tries to authenticate but does not fail if token is absent.
    Use for endpoints that work for both authenticated and anonymous users.
    A token that is present but invalid is still rejected.
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        from flask import request, jsonify
        token = get_token_from_request(request)
        payload = None
        if token:
            payload = decode_token(token)
            if not payload:
                return jsonify({"status": "error", "message": "Invalid or expired token."}), 401
        _bind_identity(payload)
        return fn(*args, **kwargs)
    return wrapper
