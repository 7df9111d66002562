import pytest
from cryptography.exceptions import InvalidTag

from vault_crypto import IV_BYTES, AesGcmEncryptor, NullEncryptor


@pytest.fixture
def enc():
    return AesGcmEncryptor()


def test_encrypt_decrypt(enc):
    key = enc.generate_key()
    ciphertext, iv = enc.encrypt(b"lab report: HbA1c 6.1%", key)

    assert len(key) == 32
    assert len(iv) == IV_BYTES
    assert enc.decrypt(ciphertext, key, iv) == b"lab report: HbA1c 6.1%"


def test_fresh_iv_per_message(enc):
    key = enc.generate_key()
    assert enc.encrypt(b"same", key)[1] != enc.encrypt(b"same", key)[1]


def test_tampering_is_detected(enc):
    key = enc.generate_key()
    ciphertext, iv = enc.encrypt(b"allergies: penicillin", key)
    tampered = bytes([ciphertext[0] ^ 1]) + ciphertext[1:]

    with pytest.raises(InvalidTag):
        enc.decrypt(tampered, key, iv)
    with pytest.raises(InvalidTag):
        enc.decrypt(ciphertext, enc.generate_key(), iv)


def test_key_export_import(enc):
    key = enc.generate_key()
    assert enc.import_key(enc.export_key(key)) == key
    with pytest.raises(ValueError):
        enc.import_key(enc.export_key(b"short"))


def test_null_encryptor_passes_through():
    enc = NullEncryptor()
    key = enc.generate_key()
    ciphertext, iv = enc.encrypt(b"plain", key)
    assert ciphertext == b"plain"
    assert enc.decrypt(ciphertext, key, iv) == b"plain"
