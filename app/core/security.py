# app/core/security.py
import time, hmac, hashlib, base64, json, uuid
from typing import Optional, Dict, Any
from fastapi import HTTPException, Header, Depends
from app.core.config import settings


# =========================
# Helpers internes JWT
# =========================
def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

def _b64pad(s: str) -> str:
    return s + "=" * (-len(s) % 4)

def _sign(header: dict, payload: dict, secret: str) -> str:
    header_b64  = _b64url(json.dumps(header, separators=(",", ":"), default=str).encode())
    payload_b64 = _b64url(json.dumps(payload, separators=(",", ":"), default=str).encode())
    token = f"{header_b64}.{payload_b64}"
    sig = hmac.new(secret.encode(), token.encode(), hashlib.sha256).digest()
    return token + "." + _b64url(sig)

# =========================
# Création & vérification JWT
# =========================
def create_jwt(sub: str, exp_sec: int = 3600, extra_claims: Optional[Dict[str, Any]] = None) -> str:
    """
    Émet un token au même format que le fournisseur d'identité
    (utilisé par les scripts d'admin et les tests).
    """
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {"sub": sub, "exp": int(time.time()) + exp_sec, "aud": "authenticated"}
    if extra_claims:
        for k, v in extra_claims.items():
            if k in ("sub", "exp"):
                continue
            payload[k] = v
    return _sign(header, payload, settings.JWT_SECRET)

def verify_jwt(token: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
        header = json.loads(base64.urlsafe_b64decode(_b64pad(header_b64)).decode())
        if header.get("alg") != "HS256":
            raise ValueError("unsupported alg")

        token_unsigned = f"{header_b64}.{payload_b64}"
        expected_sig = _b64url(hmac.new(
            settings.JWT_SECRET.encode(),
            token_unsigned.encode(),
            hashlib.sha256
        ).digest())

        if not hmac.compare_digest(expected_sig, sig_b64):
            raise ValueError("bad signature")

        payload = json.loads(base64.urlsafe_b64decode(_b64pad(payload_b64)).decode())
        if payload.get("exp", 0) < int(time.time()):
            raise ValueError("expired")

        return payload
    except Exception:
        raise HTTPException(status_code=401, detail="Utilisateur non authentifié")


# =========================
# Dépendances FastAPI (auth)
# =========================
def get_bearer_token(authorization: str = Header(default="")) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Token d'authentification manquant")
    return authorization[7:]

def get_optional_bearer_token(authorization: str = Header(default="")) -> Optional[str]:
    if authorization.startswith("Bearer "):
        return authorization[7:]
    return None

def get_current_payload(token: str = Depends(get_bearer_token)) -> dict:
    return verify_jwt(token)

def get_current_user_id(payload: dict = Depends(get_current_payload)) -> uuid.UUID:
    sub = payload.get("sub")
    try:
        return uuid.UUID(str(sub))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Token invalide (sub manquant)")

def user_id_from_token(token: Optional[str]) -> Optional[uuid.UUID]:
    """Variante sans exception : None si le token est absent ou invalide."""
    if not token:
        return None
    try:
        return get_current_user_id(verify_jwt(token))
    except HTTPException:
        return None
