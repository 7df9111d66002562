import cv2
import numpy as np
import pytest

from qr_codes import data_url_to_bytes, decode_profile_bundle, decode_qr, encode_profile_bundle, encode_qr


def test_patient_id_qr_scans_back():
    png = data_url_to_bytes(encode_qr("P-2026-047"))
    assert png.startswith(b"\x89PNG")
    assert decode_qr(png) == "P-2026-047"


def test_profile_bundle_qr_scans_back():
    profile = {"patientId": "P-2026-047", "name": "Asha", "bloodType": "O+"}
    assert decode_profile_bundle(data_url_to_bytes(encode_profile_bundle(profile))) == profile


def test_non_image_rejected():
    with pytest.raises(ValueError):
        decode_qr(b"not an image")


def test_image_without_qr_rejected():
    blank = np.full((200, 200, 3), 255, dtype=np.uint8)
    ok, buf = cv2.imencode(".png", blank)
    with pytest.raises(ValueError):
        decode_qr(buf.tobytes())
