"""
backend/notifications.py
Outbound messages: OTP e-mails through the SMTP relay (Flask-Mail) and
incoming-access-request alerts to patients (e-mail, Twilio SMS).
"""

import os
import logging
from typing import Optional

from flask_mail import Mail, Message
from twilio.rest import Client

from errors import UpstreamUnavailable

logger = logging.getLogger("jeevan.notifications")

# ── SMTP relay ────────────────────────────────────────────────────────────────
SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_SECURE = os.environ.get("SMTP_SECURE", "false").lower() == "true"   # true for 465
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASS = os.environ.get("SMTP_PASS", "")
EMAIL_FROM = os.environ.get("EMAIL_FROM", SMTP_USER)

MAIL_CONFIG = {
    "MAIL_SERVER": SMTP_HOST or "localhost",
    "MAIL_PORT": SMTP_PORT,
    "MAIL_USE_SSL": SMTP_SECURE,
    "MAIL_USE_TLS": not SMTP_SECURE,
    "MAIL_USERNAME": SMTP_USER,
    "MAIL_PASSWORD": SMTP_PASS,
    "MAIL_DEFAULT_SENDER": EMAIL_FROM or "noreply@localhost",
}

mail = Mail()

# ── Twilio ────────────────────────────────────────────────────────────────────
TWILIO_SID = os.environ.get("TWILIO_ACCOUNT_SID")
TWILIO_TOKEN = os.environ.get("TWILIO_AUTH_TOKEN")
TWILIO_FROM = os.environ.get("TWILIO_FROM_NUMBER")


def mail_configured() -> bool:
    return bool(SMTP_HOST and SMTP_USER and SMTP_PASS)


def get_twilio_client():
    if TWILIO_SID and TWILIO_TOKEN:
        return Client(TWILIO_SID, TWILIO_TOKEN)
    return None


def send_email(to: str, subject: str, text: str, html: Optional[str] = None) -> None:
    """Send through the relay. Must run inside a Flask app context."""
    try:
        msg = Message(subject=subject, recipients=[to], body=text, html=html)
        mail.send(msg)
        logger.info(f"E-mail sent to {to}: {subject}")
    except Exception as e:
        logger.error(f"E-mail to {to} failed: {e}")
        raise UpstreamUnavailable("smtp", str(e)) from e


def send_sms(phone: str, body: str) -> bool:
    client = get_twilio_client()
    if not client or not TWILIO_FROM:
        return False
    try:
        client.messages.create(body=body, from_=TWILIO_FROM, to=phone)
        logger.info(f"Twilio SMS sent to {phone}")
        return True
    except Exception as e:
        logger.error(f"Twilio SMS failed: {e}")
        return False


def notify_patient_of_request(patient: Optional[dict], request: dict) -> bool:
    """
    Tell a patient a doctor is waiting on their decision.
    Returns True if any channel accepted the message. Never raises: an
    unreachable patient simply leaves the request pending until it expires.
    """
    if not patient:
        logger.warning(f"Patient {request.get('patient_id')} has no contact record; request stays pending")
        return False

    doctor = request.get("doctor_identity", "A doctor")
    text = (
        f"{doctor} is requesting access to your medical records "
        f"(request {request.get('request_id')}). Open JeevanConnect to approve or deny."
    )
    reached = False

    if patient.get("email") and mail_configured():
        try:
            send_email(patient["email"], "New access request", text)
            reached = True
        except UpstreamUnavailable as e:
            logger.warning(f"Access-request e-mail not delivered: {e}")

    if patient.get("phone"):
        reached = send_sms(patient["phone"], text) or reached

    if not reached:
        logger.warning(f"No channel reached patient {request.get('patient_id')}; request stays pending")
    return reached
