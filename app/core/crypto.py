# app/core/crypto.py
"""
Chiffrement AES-256-GCM des secrets stockés en base (refresh tokens OAuth).

Format stocké : base64( iv(12 octets) || ciphertext+tag )
Clé : settings.SECRET_KEY, base64 de 32 octets.
"""
import base64
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings

IV_SIZE = 12


class CryptoError(Exception):
    pass


def _key() -> bytes:
    if not settings.SECRET_KEY:
        raise CryptoError("SECRET_KEY non configurée")
    try:
        key = base64.b64decode(settings.SECRET_KEY)
    except ValueError as exc:
        raise CryptoError("SECRET_KEY invalide (base64 attendu)") from exc
    if len(key) != 32:
        raise CryptoError("SECRET_KEY doit faire 32 octets (AES-256)")
    return key


def encrypt_secret(plaintext: str) -> str:
    iv = os.urandom(IV_SIZE)
    ct = AESGCM(_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + ct).decode("ascii")


def decrypt_secret(token: str) -> str:
    raw = base64.b64decode(token)
    iv, ct = raw[:IV_SIZE], raw[IV_SIZE:]
    return AESGCM(_key()).decrypt(iv, ct, None).decode("utf-8")
