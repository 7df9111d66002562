"""
backend/vault_crypto.py
AES-256-GCM encryption for vault data and cached grant payloads.

Thin wrappers only: key generation, raw key export/import (base64) and
authenticated encrypt/decrypt with a random 96-bit IV. No key management is
layered on top; callers own the keys.
"""

import os
import base64
from typing import Tuple

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_BYTES = 12


class AesGcmEncryptor:
    """Production Encryptor backed by cryptography's AESGCM."""

    def generate_key(self) -> bytes:
        return AESGCM.generate_key(bit_length=256)

    def export_key(self, key: bytes) -> str:
        return base64.b64encode(key).decode()

    def import_key(self, key_b64: str) -> bytes:
        key = base64.b64decode(key_b64)
        if len(key) != 32:
            raise ValueError("Vault keys must be 256-bit")
        return key

    def encrypt(self, data: bytes, key: bytes) -> Tuple[bytes, bytes]:
        iv = os.urandom(IV_BYTES)
        return AESGCM(key).encrypt(iv, data, None), iv

    def decrypt(self, ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
        return AESGCM(key).decrypt(iv, ciphertext, None)


class NullEncryptor:
    """Pass-through Encryptor for tests."""

    def generate_key(self) -> bytes:
        return b"\x00" * 32

    def export_key(self, key: bytes) -> str:
        return base64.b64encode(key).decode()

    def import_key(self, key_b64: str) -> bytes:
        return base64.b64decode(key_b64)

    def encrypt(self, data: bytes, key: bytes) -> Tuple[bytes, bytes]:
        return data, b""

    def decrypt(self, ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
        return ciphertext
