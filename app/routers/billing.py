# app/routers/billing.py
from __future__ import annotations

import hmac
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.roles import CurrentUser, require_shop
from app.core.security import get_optional_bearer_token, user_id_from_token
from app.db.models import SyncLog
from app.db.rpc import RpcClient, RpcError, get_rpc
from app.db.session import get_async_session
from app.schemas.billing import FinalizeInvoiceIn

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["billing"],
)


# =========================================================
#   FINALISATION DE FACTURE
# =========================================================
@router.post("/billing-finalize-invoice")
async def finalize_invoice(
    payload: FinalizeInvoiceIn,
    current: CurrentUser = Depends(require_shop),
    rpc: RpcClient = Depends(get_rpc),
):
    idempotency_key = (payload.idempotencyKey or "").strip()
    if not payload.invoiceId or not idempotency_key:
        raise ApiError(400, "BAD_REQUEST", "invoiceId et idempotencyKey sont obligatoires")

    try:
        data = await rpc.call(
            "finalize_invoice",
            p_invoice_id=str(payload.invoiceId),
            p_user=str(current.id),
            p_idempotency_key=idempotency_key,
        )
    except RpcError as exc:
        if exc.matches("insufficient stock", "stock insuffisant"):
            raise ApiError(422, "STOCK_INSUFFICIENT", exc.message)
        if exc.matches("serial"):
            raise ApiError(422, "SERIAL_REQUIRED", exc.message)
        if exc.matches("not_draft", "not draft"):
            raise ApiError(409, "NOT_DRAFT", exc.message)
        if exc.matches("idempotent", "idempotency"):
            return {
                "ok": True,
                "status": "idempotent",
                "data": {"status": "idempotent", "invoiceId": str(payload.invoiceId)},
            }
        raise ApiError(500, "INTERNAL", exc.message)

    logger.info("Facture %s finalisée par %s", payload.invoiceId, current.id)
    return {"ok": True, "data": data}


# =========================================================
#   WEBHOOK REMBOURSEMENTS AMAZON
# =========================================================
def verify_refund_secret(x_webhook_secret: str = Header(default="")) -> None:
    expected = settings.REFUNDS_WEBHOOK_SECRET
    if not expected or not hmac.compare_digest(x_webhook_secret.strip(), expected):
        raise ApiError(401, "UNAUTHORIZED", "Secret de webhook invalide")


def resolve_refund_user(token: Optional[str] = Depends(get_optional_bearer_token)) -> uuid.UUID:
    """Utilisateur système configuré, sinon l'utilisateur du token Bearer."""
    if settings.REFUNDS_SYSTEM_USER_ID:
        try:
            return uuid.UUID(settings.REFUNDS_SYSTEM_USER_ID)
        except ValueError:
            logger.error("REFUNDS_SYSTEM_USER_ID invalide : %s", settings.REFUNDS_SYSTEM_USER_ID)
    user_id = user_id_from_token(token)
    if user_id is None:
        raise ApiError(401, "UNAUTHORIZED", "Utilisateur non authentifié")
    return user_id


async def _log_sync(session: AsyncSession, status: str, message: str, details: Dict[str, Any]) -> None:
    # journal d'audit non bloquant
    try:
        session.add(SyncLog(
            marketplace="amazon",
            operation="refund_ingest",
            status=status,
            message=message,
            details=details,
        ))
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception("sync_logs : écriture impossible (%s)", message)


def _pick(data: Any, *keys: str):
    if not isinstance(data, dict):
        return None
    for k in keys:
        if data.get(k):
            return str(data[k])
    return None


@router.post("/amazon-refund-webhook", dependencies=[Depends(verify_refund_secret)])
async def amazon_refund_webhook(
    request: Request,
    user_id: uuid.UUID = Depends(resolve_refund_user),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    try:
        payload = await request.json()
    except ValueError:
        raise ApiError(400, "BAD_JSON", "Corps JSON invalide")
    if not isinstance(payload, dict):
        raise ApiError(400, "BAD_JSON", "Un objet JSON est attendu")

    items = payload.get("items")
    await _log_sync(session, "ok", "webhook_received", {
        "sourceEventId": payload.get("sourceEventId") or payload.get("source_event_id"),
        "orderId": payload.get("orderId"),
        "itemsCount": len(items) if isinstance(items, list) else 0,
    })

    try:
        data = await rpc.call("ingest_amazon_refund", p_payload=payload, p_user=str(user_id))
    except RpcError as exc:
        await _log_sync(session, "error", "rpc_error", {"err": exc.message})
        raise ApiError(500, "INTERNAL", exc.message)

    out = {
        "ok": True,
        "refundId": _pick(data, "refund_id", "refundId"),
        "creditNoteId": _pick(data, "credit_note_id", "creditNoteId"),
        "matchedInvoiceId": _pick(data, "matched_invoice_id", "matchedInvoiceId"),
    }
    await _log_sync(session, "ok", "rpc_ok", {k: v for k, v in out.items() if k != "ok"})
    return out
