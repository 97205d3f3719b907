# app/services/ebay_oauth.py
"""
Liaison OAuth (trois étapes) d'un compte vendeur eBay.

authorize : nonce aléatoire + ligne `oauth_tokens` "pending" (10 min) + redirection
callback  : vérification du nonce, échange du code, stockage du token
            (refresh token chiffré AES-GCM), suppression de la ligne pending
test      : identité + privilèges vendeur, refresh du token si expiré ou refusé (401)
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.crypto import decrypt_secret, encrypt_secret
from app.core.timeutils import as_utc, utcnow
from app.db.models import MarketplaceAccount, OAuthToken, SyncLog

logger = logging.getLogger(__name__)

PROVIDER = "ebay"
PENDING = "pending"
CONSUMED = "consumed"
PENDING_TTL = timedelta(minutes=10)
EXPIRY_MARGIN = 120

AUTH_URLS = {
    "production": "https://auth.ebay.com/oauth2/authorize",
    "sandbox": "https://auth.sandbox.ebay.com/oauth2/authorize",
}
TOKEN_URLS = {
    "production": "https://api.ebay.com/identity/v1/oauth2/token",
    "sandbox": "https://api.sandbox.ebay.com/identity/v1/oauth2/token",
}

_SCOPE = "https://api.ebay.com/oauth/api_scope"
SCOPES = {
    "production": [
        f"{_SCOPE}/sell.account",
        f"{_SCOPE}/sell.inventory",
        f"{_SCOPE}/sell.fulfillment",
    ],
    "sandbox": [
        _SCOPE,
        f"{_SCOPE}/sell.marketing.readonly",
        f"{_SCOPE}/sell.marketing",
        f"{_SCOPE}/sell.inventory.readonly",
        f"{_SCOPE}/sell.inventory",
        f"{_SCOPE}/sell.account.readonly",
        f"{_SCOPE}/sell.account",
        f"{_SCOPE}/sell.fulfillment.readonly",
        f"{_SCOPE}/sell.fulfillment",
        f"{_SCOPE}/sell.analytics.readonly",
        f"{_SCOPE}/sell.finances",
        f"{_SCOPE}/sell.payment.dispute",
        f"{_SCOPE}/commerce.identity.readonly",
    ],
}


class OAuthError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


# ------------------------------------------------------------------
# State
# ------------------------------------------------------------------
def new_nonce() -> str:
    return secrets.token_urlsafe(32)


def encode_state(nonce: str, environment: str, account_id: Optional[str] = None) -> str:
    raw = json.dumps({"n": nonce, "environment": environment, "account_id": account_id})
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_state(state: str) -> Dict[str, Any]:
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    except (ValueError, binascii.Error):
        return {}
    return data if isinstance(data, dict) else {}


def client_credentials(environment: str) -> tuple[str, str, str]:
    runame = settings.EBAY_RUNAME_SANDBOX if environment == "sandbox" else settings.EBAY_RUNAME_PROD
    return settings.EBAY_APP_ID, settings.EBAY_CERT_ID, runame


def build_authorize_url(environment: str, state: str, login: bool = False) -> str:
    client_id, _, runame = client_credentials(environment)
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": runame,
        "scope": " ".join(SCOPES[environment]),
        "state": state,
        "prompt": "login" if login else "consent",
    }
    return f"{AUTH_URLS[environment]}?{urlencode(params)}"


# ------------------------------------------------------------------
# Authorize
# ------------------------------------------------------------------
async def start_authorization(
    session: AsyncSession,
    environment: str,
    account_id: Optional[str],
    login: bool,
    user_id: Optional[uuid.UUID],
) -> str:
    client_id, _, runame = client_credentials(environment)
    if not client_id or not runame:
        raise OAuthError(500, "CONFIG_MISSING", "Identifiants eBay non configurés")

    nonce = new_nonce()
    session.add(OAuthToken(
        marketplace_account_id=None,
        access_token=PENDING,
        state_nonce=nonce,
        environment=environment,
        expires_at=utcnow() + PENDING_TTL,
        created_by=user_id,
    ))
    await session.commit()

    state = encode_state(nonce, environment, account_id)
    logger.info("eBay authorize : state créé (%s)", environment)
    return build_authorize_url(environment, state, login=login)


# ------------------------------------------------------------------
# Callback
# ------------------------------------------------------------------
def _json_or_raw(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text[:500]}
    return data if isinstance(data, dict) else {"data": data}


async def post_token(environment: str, form: Dict[str, str]) -> tuple[int, Dict[str, Any]]:
    """POST sur l'endpoint token (Basic auth). Une erreur réseau devient PROVIDER_ERROR."""
    client_id, client_secret, _ = client_credentials(environment)
    basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.post(
                TOKEN_URLS[environment],
                headers={
                    "Authorization": f"Basic {basic}",
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                data=form,
            )
    except httpx.HTTPError as exc:
        logger.error("eBay token : appel impossible (%s)", exc)
        raise OAuthError(502, "PROVIDER_ERROR", "Serveur d'authentification eBay injoignable")
    return resp.status_code, _json_or_raw(resp)


async def exchange_code(environment: str, code: str) -> Dict[str, Any]:
    _, _, runame = client_credentials(environment)
    status, data = await post_token(environment, {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": runame,
    })
    if status >= 400:
        logger.error("eBay token KO (%s) : %s", status, data)
        raise OAuthError(502, "PROVIDER_ERROR", "Échec de l'échange du code eBay")
    return data


async def _upsert_account(session: AsyncSession, environment: str,
                          account_id: Optional[str], user_id: Optional[uuid.UUID]) -> MarketplaceAccount:
    label = f"eBay {'Sandbox' if environment == 'sandbox' else 'Production'}"

    if account_id:
        try:
            acc_uuid = uuid.UUID(str(account_id))
        except ValueError:
            acc_uuid = None
        if acc_uuid is not None:
            acc = await session.get(MarketplaceAccount, acc_uuid)
            if acc is not None and acc.provider == PROVIDER:
                acc.is_active = True
                acc.needs_reauth = False
                acc.environment = environment
                acc.label = label
                return acc
        logger.warning("eBay callback : account_id %s introuvable, upsert par défaut", account_id)

    external_id = settings.EBAY_APP_ID
    acc = (
        await session.execute(
            select(MarketplaceAccount).where(
                MarketplaceAccount.provider == PROVIDER,
                MarketplaceAccount.environment == environment,
                MarketplaceAccount.external_id == external_id,
            )
        )
    ).scalar_one_or_none()
    if acc is None:
        acc = MarketplaceAccount(
            provider=PROVIDER,
            environment=environment,
            external_id=external_id,
            created_by=user_id,
        )
        session.add(acc)
    acc.label = label
    acc.is_active = True
    acc.needs_reauth = False
    await session.flush()
    return acc


async def complete_authorization(session: AsyncSession, code: str, state: str) -> MarketplaceAccount:
    decoded = decode_state(state)
    nonce = decoded.get("n")
    environment = decoded.get("environment")
    if environment not in AUTH_URLS:
        environment = "production"
    if not isinstance(nonce, str) or not nonce:
        raise OAuthError(400, "INVALID_STATE", "State OAuth invalide")

    pending = (
        await session.execute(
            select(OAuthToken).where(
                OAuthToken.state_nonce == nonce,
                OAuthToken.access_token == PENDING,
            )
        )
    ).scalars().first()
    now = utcnow()
    if pending is None or as_utc(pending.expires_at) <= now:
        await session.execute(
            delete(OAuthToken).where(OAuthToken.state_nonce == nonce, OAuthToken.access_token == PENDING)
        )
        await session.commit()
        raise OAuthError(400, "INVALID_STATE", "State OAuth inconnu ou expiré")

    data = await exchange_code(environment, code)
    access_token = data.get("access_token")
    refresh_token = data.get("refresh_token")
    if not access_token or not refresh_token:
        raise OAuthError(502, "PROVIDER_ERROR", "Réponse eBay sans refresh token")

    expires_in = int(data.get("expires_in") or 7200)
    scope = data.get("scope")
    if isinstance(scope, list):
        scope = " ".join(scope)

    account = await _upsert_account(session, environment, decoded.get("account_id"), pending.created_by)
    session.add(OAuthToken(
        marketplace_account_id=account.id,
        access_token=access_token,
        refresh_token_enc=encrypt_secret(refresh_token),
        scope=scope,
        state_nonce=nonce,
        environment=environment,
        expires_at=now + timedelta(seconds=max(0, expires_in - EXPIRY_MARGIN)),
        created_by=pending.created_by,
    ))
    await session.delete(pending)
    await session.commit()
    logger.info("eBay callback : compte %s connecté (%s)", account.id, environment)
    return account


# ------------------------------------------------------------------
# Lecture
# ------------------------------------------------------------------
async def get_oauth_token(session: AsyncSession, account_id: uuid.UUID) -> Optional[Dict[str, Any]]:
    """Dernier token utilisable d'un compte, refresh token déchiffré."""
    token = (
        await session.execute(
            select(OAuthToken)
            .where(
                OAuthToken.marketplace_account_id == account_id,
                OAuthToken.access_token.not_in([PENDING, CONSUMED]),
            )
            .order_by(OAuthToken.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if token is None:
        return None
    return {
        "id": str(token.id),
        "marketplace_account_id": str(token.marketplace_account_id),
        "access_token": token.access_token,
        "refresh_token": decrypt_secret(token.refresh_token_enc) if token.refresh_token_enc else None,
        "scope": token.scope,
        "expires_at": as_utc(token.expires_at),
        "expired": as_utc(token.expires_at) <= utcnow(),
    }


async def store_refreshed_token(session: AsyncSession, token_id: uuid.UUID, data: Dict[str, Any]) -> None:
    token = await session.get(OAuthToken, token_id)
    if token is None:
        return
    expires_in = int(data.get("expires_in") or 7200)
    token.access_token = data["access_token"]
    token.expires_at = utcnow() + timedelta(seconds=max(0, expires_in - EXPIRY_MARGIN))
    # eBay ne renvoie un nouveau refresh token que s'il a tourné
    if data.get("refresh_token"):
        token.refresh_token_enc = encrypt_secret(data["refresh_token"])
    await session.flush()


async def write_sync_log(session: AsyncSession, operation: str, status: str, message: str,
                         details: Optional[Dict[str, Any]] = None, marketplace: str = PROVIDER) -> None:
    session.add(SyncLog(
        marketplace=marketplace,
        operation=operation,
        status=status,
        message=message,
        details=details or {},
    ))
    await session.commit()


# ------------------------------------------------------------------
# Test de connexion
# ------------------------------------------------------------------
IDENTITY_URLS = {
    "production": "https://apiz.ebay.com/commerce/identity/v1/user/",
    "sandbox": "https://apiz.sandbox.ebay.com/commerce/identity/v1/user/",
}
PRIVILEGE_URLS = {
    "production": "https://api.ebay.com/sell/account/v1/privilege",
    "sandbox": "https://api.sandbox.ebay.com/sell/account/v1/privilege",
}
DEFAULT_REFRESH_SCOPE = " ".join([_SCOPE, *SCOPES["production"]])
INSUFFICIENT_PERMISSIONS = "insufficient_permissions_or_r0"
REAUTH_HINT = "Refaire consent Authorization Code avec scopes sell.*"


async def api_get(url: str, access_token: str) -> tuple[int, Dict[str, Any]]:
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
    except httpx.HTTPError as exc:
        logger.error("eBay API %s injoignable (%s)", url, exc)
        raise OAuthError(502, "EBAY_UNAVAILABLE", "API eBay injoignable")
    return resp.status_code, _json_or_raw(resp)


async def get_active_account(session: AsyncSession, account_id: uuid.UUID) -> Optional[MarketplaceAccount]:
    return (
        await session.execute(
            select(MarketplaceAccount).where(
                MarketplaceAccount.id == account_id,
                MarketplaceAccount.provider == PROVIDER,
                MarketplaceAccount.is_active.is_(True),
            )
        )
    ).scalar_one_or_none()


class ConnectionCheck:
    """
    Vérifie qu'un compte eBay connecté peut appeler l'API vendeur.

    Le token est rafraîchi s'il est expiré, ou une fois si eBay répond 401.
    Chaque test écrit une ligne `sync_logs` (operation = oauth_test).
    """

    def __init__(self, session: AsyncSession, account: MarketplaceAccount):
        self.session = session
        self.account = account
        self.environment = account.environment or "sandbox"
        self.token: Optional[Dict[str, Any]] = None
        self.access_token: Optional[str] = None
        self.refreshed = False
        self.retry_count = 0

    async def run(self) -> Dict[str, Any]:
        try:
            result = await self._run()
        except OAuthError as exc:
            await self._log("fail", exc.message, exc.status_code)
            raise
        if result["ok"]:
            await self._log("retry" if self.retry_count else "ok", "Test de connexion réussi", 200)
        else:
            await self._log("fail", INSUFFICIENT_PERMISSIONS, 403)
        return result

    async def _run(self) -> Dict[str, Any]:
        client_id, client_secret, runame = client_credentials(self.environment)
        if not client_id or not client_secret or not runame:
            raise OAuthError(500, "CONFIG_MISSING", "Identifiants eBay non configurés")

        self.token = await get_oauth_token(self.session, self.account.id)
        if self.token is None:
            raise OAuthError(424, "TOKEN_MISSING", "Aucun token eBay pour ce compte")
        self.access_token = self.token["access_token"]

        if self.token["expired"]:
            if not self.token["refresh_token"]:
                raise OAuthError(424, "TOKEN_EXPIRED", "Token eBay expiré, aucun refresh token")
            await self._refresh()

        status, identity = await self._get(IDENTITY_URLS[self.environment])
        if status >= 400:
            raise OAuthError(502, "EBAY_UNAVAILABLE", f"API Identity eBay : HTTP {status}")

        status, privileges = await self._get(PRIVILEGE_URLS[self.environment])
        if status in (401, 403):
            return {
                "ok": False,
                "reason": INSUFFICIENT_PERMISSIONS,
                "hint": REAUTH_HINT,
                "environment": self.environment,
            }
        if status >= 400:
            raise OAuthError(502, "EBAY_UNAVAILABLE", f"API Privilege eBay : HTTP {status}")

        return {
            "ok": True,
            "scopes": (self.token["scope"] or "").strip(),
            "environment": self.environment,
            "identity": {
                "userId": identity.get("userId") or "",
                "username": identity.get("username") or "",
                "registrationMarketplaceId": identity.get("registrationMarketplaceId") or "",
            },
            "privileges": {
                "sellerRegistrationCompleted": bool(privileges.get("sellerRegistrationCompleted")),
                "sellingLimit": privileges.get("sellingLimit"),
            },
        }

    async def _get(self, url: str) -> tuple[int, Dict[str, Any]]:
        status, data = await api_get(url, self.access_token)
        if status == 401 and not self.refreshed and self.token["refresh_token"]:
            self.retry_count = 1
            await self._refresh()
            status, data = await api_get(url, self.access_token)
        return status, data

    async def _refresh(self) -> None:
        _, _, runame = client_credentials(self.environment)
        status, data = await post_token(self.environment, {
            "grant_type": "refresh_token",
            "refresh_token": self.token["refresh_token"],
            "redirect_uri": runame,
            "scope": (self.token["scope"] or "").strip() or DEFAULT_REFRESH_SCOPE,
        })
        if status >= 400 or not data.get("access_token"):
            self.account.needs_reauth = True
            reason = data.get("error") or f"HTTP {status}"
            raise OAuthError(424, "REFRESH_FAILED", f"Rafraîchissement du token eBay refusé ({reason})")
        await store_refreshed_token(self.session, uuid.UUID(self.token["id"]), data)
        self.access_token = data["access_token"]
        self.refreshed = True
        logger.info("eBay : token du compte %s rafraîchi", self.account.id)

    async def _log(self, status: str, message: str, http_status: int) -> None:
        await write_sync_log(self.session, "oauth_test", status, message, {
            "marketplace_account_id": str(self.account.id),
            "http_status": http_status,
            "retry_count": self.retry_count,
        })


# ------------------------------------------------------------------
# Comptes
# ------------------------------------------------------------------
async def list_accounts(session: AsyncSession, provider: str) -> list[Dict[str, Any]]:
    """
    Comptes actifs d'un fournisseur, un par identifiant externe.
    En cas de doublon on garde le plus récent qui a un token, sinon le plus récent.
    """
    accounts = (
        await session.execute(
            select(MarketplaceAccount)
            .where(MarketplaceAccount.provider == provider, MarketplaceAccount.is_active.is_(True))
            .order_by(MarketplaceAccount.created_at.desc())
        )
    ).scalars().all()

    connected: set = set()
    if accounts:
        connected = set(
            (
                await session.execute(
                    select(OAuthToken.marketplace_account_id).where(
                        OAuthToken.marketplace_account_id.in_([a.id for a in accounts]),
                        OAuthToken.access_token.not_in([PENDING, CONSUMED]),
                    )
                )
            ).scalars().all()
        )

    groups: Dict[str, list] = {}
    for acc in accounts:
        if acc.external_id:
            groups.setdefault(acc.external_id, []).append(acc)

    result = []
    for accs in groups.values():
        with_token = next((a for a in accs if a.id in connected), None)
        canonical = with_token or accs[0]
        result.append({
            "id": str(canonical.id),
            "display_name": canonical.label,
            "environment": canonical.environment,
            "provider_account_id": canonical.external_id,
            "connected": with_token is not None,
            "needs_reauth": bool(canonical.needs_reauth),
        })
    return result
