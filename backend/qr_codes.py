"""
backend/qr_codes.py
QR transport for patient ids and profile bundles ("share this QR with your
doctor" / "scan-to-treat").
"""

import io
import json
import base64

import cv2
import numpy as np
import qrcode


def encode_qr(value: str, box_size: int = 8) -> str:
    """Render `value` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=box_size, border=4)
    qr.add_data(value)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def encode_profile_bundle(profile: dict) -> str:
    """Serialize a profile bundle compactly and render it as a QR data URL."""
    return encode_qr(json.dumps(profile, separators=(",", ":"), sort_keys=True))


def data_url_to_bytes(data_url: str) -> bytes:
    return base64.b64decode(data_url.split(",", 1)[-1])


def decode_qr(image_bytes: bytes) -> str:
    """Decode the first QR code found in an image. Raises ValueError if none."""
    img_array = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Could not decode image.")
    text, points, _ = cv2.QRCodeDetector().detectAndDecode(img)
    if not text:
        raise ValueError("No QR code found in image.")
    return text.strip()


def decode_profile_bundle(image_bytes: bytes) -> dict:
    return json.loads(decode_qr(image_bytes))
