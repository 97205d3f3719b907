# app/routers/consignments.py
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ApiError
from app.core.roles import CurrentUser, forbid_roles, require_admin
from app.db.models import (
    Consignment,
    ConsignmentMove,
    ConsignmentMoveType,
    ConsignmentStockCustomer,
    Customer,
    Product,
    Stock,
)
from app.db.session import get_async_session, get_db
from app.schemas.consignments import ConsignmentMoveIn, ConsignmentMoveOut, SyncInvoicesIn
from app.services.consignments import (
    build_detail_line,
    build_stock_summary,
    is_subcontractor_stock,
    matches_search,
    run_check_unpaid,
    run_sync_invoices,
    unit_price_ht_for,
    vat_fraction,
    vat_regime_for,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["consignments"],
)

MANUAL_MOVES = (ConsignmentMoveType.OUT.value, ConsignmentMoveType.RETURN.value)

require_not_commande = forbid_roles("COMMANDE", detail="Accès non autorisé")


# =========================================================
#   MOUVEMENT MANUEL (sortie / retour)
# =========================================================
@router.post("/consignments-move", status_code=201)
async def create_move(
    payload: ConsignmentMoveIn,
    current: CurrentUser = Depends(require_not_commande),
    session: AsyncSession = Depends(get_async_session),
):
    if payload.type not in MANUAL_MOVES:
        raise ApiError(400, "BAD_REQUEST", "Type doit être OUT ou RETURN")
    if not payload.stock_id or not payload.product_id:
        raise ApiError(400, "BAD_REQUEST", "stock_id et product_id requis")
    if payload.qty is None or payload.qty <= 0:
        raise ApiError(400, "BAD_REQUEST", "Quantité doit être > 0")

    stock = await session.get(Stock, payload.stock_id)
    if not stock:
        raise ApiError(404, "NOT_FOUND", "Stock introuvable")
    if not is_subcontractor_stock(stock):
        raise ApiError(400, "INVALID_STOCK", "Ce stock n'est pas un stock sous-traitant")
    product = await session.get(Product, payload.product_id)
    if not product:
        raise ApiError(404, "NOT_FOUND", "Produit introuvable")

    mapping = await session.get(ConsignmentStockCustomer, stock.id)
    customer_id = mapping.customer_id if mapping else None

    consignment = (
        await session.execute(
            select(Consignment).where(
                Consignment.stock_id == stock.id,
                Consignment.product_id == product.id,
            )
        )
    ).scalar_one_or_none()
    if consignment is None:
        consignment = Consignment(stock_id=stock.id, product_id=product.id, customer_id=customer_id)
        session.add(consignment)
        await session.flush()
    elif customer_id and consignment.customer_id != customer_id:
        consignment.customer_id = customer_id

    move = ConsignmentMove(
        consignment_id=consignment.id,
        stock_id=stock.id,
        product_id=product.id,
        type=payload.type,
        qty=payload.qty,
        unit_price_ht=unit_price_ht_for(product),
        vat_rate=vat_fraction(product.tax_rate),
        vat_regime=vat_regime_for(product),
        created_by=current.id,
    )
    session.add(move)
    await session.commit()
    await session.refresh(move)

    logger.info("Dépôt : %s x%d (%s) sur %s par %s", payload.type, payload.qty, product.id, stock.id, current.id)
    return {"ok": True, "move": ConsignmentMoveOut.model_validate(move)}


# =========================================================
#   LISTE (synthèse par stock + détail produit)
# =========================================================
@router.get("/consignments-list")
async def list_consignments(
    stock_id: Optional[uuid.UUID] = Query(None),
    customer_id: Optional[uuid.UUID] = Query(None),
    detail: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    stocks = [s for s in (await session.execute(select(Stock))).scalars().all() if is_subcontractor_stock(s)]
    if stock_id:
        stocks = [s for s in stocks if s.id == stock_id]

    mappings = {
        m.stock_id: m.customer_id
        for m in (await session.execute(select(ConsignmentStockCustomer))).scalars().all()
    }
    if customer_id:
        stocks = [s for s in stocks if mappings.get(s.id) == customer_id]

    stock_ids = [s.id for s in stocks]
    consignments: List[Consignment] = []
    moves_by_consignment: Dict[uuid.UUID, List[ConsignmentMove]] = defaultdict(list)
    if stock_ids:
        consignments = list(
            (await session.execute(select(Consignment).where(Consignment.stock_id.in_(stock_ids))))
            .scalars().all()
        )
        moves = (
            await session.execute(
                select(ConsignmentMove)
                .where(ConsignmentMove.stock_id.in_(stock_ids))
                .order_by(ConsignmentMove.created_at.asc())
            )
        ).scalars().all()
        for m in moves:
            moves_by_consignment[m.consignment_id].append(m)

    customer_ids = {cid for cid in mappings.values() if cid}
    customers = {
        c.id: c
        for c in (await session.execute(select(Customer).where(Customer.id.in_(customer_ids)))).scalars().all()
    } if customer_ids else {}

    parent_ids = {c.product.parent_id for c in consignments if c.product and c.product.parent_id}
    parent_names = {
        p.id: p.name
        for p in (await session.execute(select(Product).where(Product.id.in_(parent_ids)))).scalars().all()
    } if parent_ids else {}

    lines_by_stock: Dict[uuid.UUID, List[dict]] = defaultdict(list)
    for c in consignments:
        parent_name = parent_names.get(c.product.parent_id) if c.product and c.product.parent_id else None
        lines_by_stock[c.stock_id].append(build_detail_line(c, moves_by_consignment.get(c.id, []), parent_name))

    summary = [
        build_stock_summary(s, customers.get(mappings.get(s.id)), lines_by_stock.get(s.id, []))
        for s in sorted(stocks, key=lambda s: s.name)
    ]

    result = {
        "ok": True,
        "summary": summary,
        "detail": None,
        "meta": {
            "user_role": current.role,
            "can_view_vat": True,
            "filters": {
                "stock_id": str(stock_id) if stock_id else None,
                "customer_id": str(customer_id) if customer_id else None,
                "detail": detail in ("1", "true"),
                "q": q,
            },
        },
    }
    if detail in ("1", "true") and stock_id:
        lines = [li for li in lines_by_stock.get(stock_id, []) if matches_search(li, q)]
        result["detail"] = sorted(lines, key=lambda li: (li["product_name"] or ""))
    return result


# =========================================================
#   DÉCLENCHEMENTS MANUELS DES JOBS
# =========================================================
@router.post("/consignments-check-unpaid")
def check_unpaid(
    days: int = Query(30, ge=1),
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return run_check_unpaid(db, days=days)


@router.post("/consignments-sync-invoices")
def sync_invoices(
    payload: Optional[SyncInvoicesIn] = Body(None),
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    since: Optional[datetime] = payload.since if payload else None
    return run_sync_invoices(db, since=since)
