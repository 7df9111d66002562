"""
backend/otp_service.py
E-mail one-time passcodes: random 6-digit code, 5-minute TTL, one live code
per address held in memory.
"""

import os
import secrets
import logging
import datetime
import threading
from typing import Callable, Optional

logger = logging.getLogger("jeevan.otp_service")

OTP_TTL_S = int(os.environ.get("OTP_TTL_S", 300))

OTP_SUBJECT = "Your verification code"
OTP_TEXT = "Your OTP code is {code}. It will expire in {minutes} minutes."
OTP_HTML = "<p>Your OTP code is <strong>{code}</strong>. It will expire in {minutes} minutes.</p>"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class OtpService:
    """
    sender(to, subject, text, html) delivers the message, or is None when no
    relay is configured, in which case the code is written to the server log.
    """

    def __init__(
        self,
        sender: Optional[Callable[[str, str, str, str], None]] = None,
        ttl_seconds: int = OTP_TTL_S,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self.sender = sender
        self.ttl = datetime.timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._codes: dict = {}   # email → (code, expires_at)
        self._lock = threading.Lock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def issue(self, email: str) -> str:
        """
        Store a fresh code for `email` and deliver it.
        Delivery failures propagate (UpstreamUnavailable); the code stays
        stored so a developer can finish the flow from the server log.
        """
        code = generate_code()
        now = self.clock()
        with self._lock:
            # unverified codes of other addresses are dropped once stale
            self._drop_stale(now)
            self._codes[self._key(email)] = (code, now + self.ttl)

        minutes = int(self.ttl.total_seconds() // 60)
        if self.sender is None:
            logger.warning("SMTP variables missing, printing OTP to log instead")
            logger.info(f"OTP for {email}: {code}")
            return code

        try:
            self.sender(
                email,
                OTP_SUBJECT,
                OTP_TEXT.format(code=code, minutes=minutes),
                OTP_HTML.format(code=code, minutes=minutes),
            )
        except Exception:
            logger.info(f"Fallback OTP for {email}: {code}")
            raise
        return code

    def verify(self, email: str, otp: str) -> bool:
        """Single use: a matching, unexpired code is consumed."""
        key = self._key(email)
        with self._lock:
            record = self._codes.get(key)
            if record is None:
                return False
            code, expires_at = record
            if self.clock() >= expires_at:
                del self._codes[key]
                return False
            if not secrets.compare_digest(code, str(otp).strip()):
                return False
            del self._codes[key]
            return True

    def _drop_stale(self, now: datetime.datetime) -> int:
        stale = [k for k, (_, exp) in self._codes.items() if now >= exp]
        for k in stale:
            del self._codes[k]
        return len(stale)

    def purge_expired(self) -> int:
        with self._lock:
            return self._drop_stale(self.clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._codes)
