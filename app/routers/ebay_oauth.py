# app/routers/ebay_oauth.py
from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.roles import CurrentUser, require_admin
from app.db.session import get_async_session
from app.services.ebay_oauth import (
    AUTH_URLS,
    ConnectionCheck,
    OAuthError,
    complete_authorization,
    get_active_account,
    list_accounts,
    start_authorization,
    write_sync_log,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["ebay"],
)

CONNECTED_COOKIE = "gf_ebay"


@router.get("/ebay-authorize")
async def ebay_authorize(
    environment: str = Query("production"),
    account_id: Optional[str] = Query(None),
    login: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    if environment not in AUTH_URLS:
        raise ApiError(400, "BAD_REQUEST", "environment doit être production ou sandbox")
    try:
        url = await start_authorization(
            session,
            environment=environment,
            account_id=account_id,
            login=login == "1",
            user_id=current.id,
        )
    except OAuthError as exc:
        raise ApiError(exc.status_code, exc.code, exc.message)
    return RedirectResponse(url, status_code=302)


@router.get("/ebay-callback")
async def ebay_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_async_session),
):
    if not code or not state:
        raise ApiError(400, "BAD_REQUEST", "code et state sont obligatoires")
    try:
        account = await complete_authorization(session, code, state)
    except OAuthError as exc:
        logger.warning("eBay callback KO : %s (%s)", exc.code, exc.message)
        raise ApiError(exc.status_code, exc.code, exc.message)

    resp = RedirectResponse(
        f"{settings.FRONTEND_ORIGIN}/pricing?provider=ebay&connected=1",
        status_code=302,
    )
    resp.set_cookie(CONNECTED_COOKIE, "connected", max_age=300, path="/", samesite="lax")
    logger.info("eBay : compte %s connecté", account.id)
    return resp


@router.get("/ebay-test-connection")
async def ebay_test_connection(
    account_id: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    if not account_id:
        raise ApiError(400, "BAD_REQUEST", "account_id est obligatoire")
    try:
        acc_uuid = uuid.UUID(account_id)
    except ValueError:
        raise ApiError(400, "BAD_REQUEST", "account_id invalide")

    account = await get_active_account(session, acc_uuid)
    if account is None:
        raise ApiError(404, "NOT_FOUND", "Compte eBay introuvable ou inactif")

    try:
        return await ConnectionCheck(session, account).run()
    except OAuthError as exc:
        logger.warning("eBay test connexion KO pour %s : %s (%s)", account.id, exc.code, exc.message)
        raise ApiError(exc.status_code, exc.code, exc.message)


@router.get("/marketplaces-accounts")
async def marketplaces_accounts(
    provider: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    if not provider:
        await write_sync_log(session, "accounts_list", "fail", "Paramètre provider manquant",
                             {"http_status": 400}, marketplace="unknown")
        raise ApiError(400, "BAD_REQUEST", "provider est obligatoire")

    accounts = await list_accounts(session, provider)
    await write_sync_log(session, "accounts_list", "ok", f"{len(accounts)} compte(s)",
                         {"http_status": 200}, marketplace=provider[:32])
    return {"ok": True, "accounts": accounts}
