"""
backend/errors.py
Error taxonomy for the JeevanConnect access-grant service.

Ledger errors are terminal for the calling operation and surfaced verbatim.
UpstreamUnavailable wraps failures of hosted collaborators (Supabase, mail
relay, SMS gateway, audit contract, inference providers).
"""


class LedgerError(Exception):
    """Base class for access-ledger failures."""

    http_status = 400

    @property
    def name(self) -> str:
        return type(self).__name__


class InvalidPatient(LedgerError):
    http_status = 400


class NotFound(LedgerError):
    http_status = 404


class AlreadyDecided(LedgerError):
    http_status = 409


class ExpiredRequest(LedgerError):
    http_status = 410


class PayloadRequired(LedgerError):
    http_status = 400


class NoActiveGrant(LedgerError):
    """Revocation asked for a request that was never approved."""

    http_status = 409


class UpstreamUnavailable(RuntimeError):
    """A hosted collaborator could not be reached or rejected the call."""

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(f"{service} unavailable" + (f": {message}" if message else ""))
