# tests/test_crypto.py
import pytest
from cryptography.exceptions import InvalidTag

from app.core import crypto
from app.core.config import settings


def test_encrypt_roundtrip_uses_random_iv():
    first = crypto.encrypt_secret("refresh-token")
    second = crypto.encrypt_secret("refresh-token")
    assert first != second
    assert crypto.decrypt_secret(first) == "refresh-token"


def test_tampered_ciphertext_is_rejected():
    token = crypto.encrypt_secret("secret")
    raw = bytearray(crypto.base64.b64decode(token))
    raw[-1] ^= 0x01
    with pytest.raises(InvalidTag):
        crypto.decrypt_secret(crypto.base64.b64encode(bytes(raw)).decode())


@pytest.mark.parametrize("key", ["", "c2hvcnQ=", "pas du base64 !"])
def test_invalid_key(monkeypatch, key):
    monkeypatch.setattr(settings, "SECRET_KEY", key)
    with pytest.raises(crypto.CryptoError):
        crypto.encrypt_secret("x")
