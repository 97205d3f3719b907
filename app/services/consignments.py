# app/services/consignments.py
"""
Dépôt-vente chez les sous-traitants.

Le journal `consignment_moves` est la seule source de vérité : les quantités
en dépôt, facturées non payées et les montants sont recalculés à partir des
mouvements (OUT / RETURN / INVOICE / PAYMENT).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.timeutils import as_utc, utcnow
from app.db.models import (
    Consignment,
    ConsignmentMove,
    ConsignmentMoveType,
    Customer,
    Invoice,
    InvoiceItem,
    Notification,
    Product,
    Stock,
    StockGroup,
)

logger = logging.getLogger(__name__)

SUBCONTRACTOR_GROUP = "SOUS-TRAITANT"
SUBCONTRACTOR_PREFIX = "Sous-traitant:"
DEFAULT_VAT_RATE = Decimal("0.20")
UNPAID_URGENT_DAYS = 60
SYNC_WINDOW = timedelta(hours=2)

TWO = Decimal("0.01")


# =========================================================
# Helpers
# =========================================================
def is_subcontractor_stock(stock: Optional[Stock]) -> bool:
    if stock is None:
        return False
    group_name = stock.group.name if stock.group else None
    return group_name == SUBCONTRACTOR_GROUP or (stock.name or "").startswith(SUBCONTRACTOR_PREFIX)


def vat_fraction(rate) -> Decimal:
    """Taux stocké en fraction (0.20) ou en pourcentage (20) -> fraction."""
    if rate is None:
        return DEFAULT_VAT_RATE
    rate = Decimal(str(rate))
    if rate <= 0:
        return DEFAULT_VAT_RATE
    return rate / 100 if rate > 1 else rate


def vat_regime_for(product: Optional[Product]) -> str:
    if product is not None and (product.vat_type or "").lower() in ("margin", "marge"):
        return "MARGE"
    return "NORMAL"


def unit_price_ht_for(product: Product) -> Decimal:
    if product.sale_price_ht:
        price = Decimal(str(product.sale_price_ht))
    elif product.sale_price_ttc:
        price = Decimal(str(product.sale_price_ttc)) / (1 + vat_fraction(product.tax_rate))
    else:
        price = Decimal("0")
    if price <= 0:
        logger.warning("Produit %s : prix HT invalide, utilisation de 0", product.id)
        return Decimal("0")
    return price.quantize(TWO)


def _money(value: Decimal) -> float:
    return float(value.quantize(TWO))


def aggregate_moves(moves: Iterable[ConsignmentMove]) -> Dict[str, Any]:
    qty_depot = 0
    qty_unpaid = 0
    montant_ht = Decimal("0")
    tva_normal = Decimal("0")
    tva_marge = Decimal("0")
    last: Optional[ConsignmentMove] = None

    for m in moves:
        q = m.qty or 0
        up = Decimal(str(m.unit_price_ht or 0))
        rate = Decimal(str(m.vat_rate or 0))
        regime = (m.vat_regime or "").upper()
        kind = (m.type or "").upper()

        if kind == ConsignmentMoveType.OUT.value:
            qty_depot += q
        elif kind == ConsignmentMoveType.RETURN.value:
            qty_depot -= q
        if kind == ConsignmentMoveType.INVOICE.value:
            qty_unpaid += q
        elif kind == ConsignmentMoveType.PAYMENT.value:
            qty_unpaid -= q

        sign = 0
        if kind in (ConsignmentMoveType.OUT.value, ConsignmentMoveType.INVOICE.value):
            sign = 1
        elif kind == ConsignmentMoveType.PAYMENT.value:
            sign = -1
        if sign:
            montant_ht += sign * up * q
            if regime == "NORMAL":
                tva_normal += sign * up * q * rate
            elif regime == "MARGE":
                tva_marge += sign * up * q * rate

        if last is None or as_utc(m.created_at) >= as_utc(last.created_at):
            last = m

    last_up = Decimal(str(last.unit_price_ht or 0)) if last else Decimal("0")
    last_rate = Decimal(str(last.vat_rate or 0)) if last else Decimal("0")
    last_regime = (last.vat_regime or "").upper() if last else ""
    # TVA marge : prix affiché TTC ; TVA normale : prix HT
    unit_price = last_up * (1 + last_rate) if last_regime == "MARGE" else last_up

    return {
        "qty_en_depot": qty_depot,
        "qty_facture_non_payee": qty_unpaid,
        "montant_ht": _money(montant_ht),
        "tva_normal": _money(tva_normal),
        "tva_marge": _money(tva_marge),
        "vat_regime": last_regime or None,
        "unit_price": _money(unit_price),
        "total_line_price": _money(unit_price * qty_depot),
        "last_move_at": as_utc(last.created_at).isoformat() if last and last.created_at else None,
    }


def build_detail_line(consignment: Consignment, moves: List[ConsignmentMove],
                      parent_name: Optional[str] = None) -> Dict[str, Any]:
    product = consignment.product
    line = {
        "consignment_id": str(consignment.id),
        "stock_id": str(consignment.stock_id),
        "product_id": str(consignment.product_id),
        "product_name": product.name if product else None,
        "product_sku": product.sku if product else None,
        "serial_number": product.serial_number if product else None,
        "parent_id": str(product.parent_id) if product and product.parent_id else None,
        "parent_name": parent_name,
        "product_type": product.product_type if product else None,
        "pro_price": float(product.pro_price) if product and product.pro_price is not None else None,
    }
    line.update(aggregate_moves(moves))
    return line


def matches_search(line: Dict[str, Any], q: Optional[str]) -> bool:
    if not q:
        return True
    ql = q.lower()
    return ql in (line.get("product_name") or "").lower() or ql in (line.get("product_sku") or "").lower()


def build_stock_summary(stock: Stock, customer: Optional[Customer],
                        lines: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_ht = sum(Decimal(str(li["montant_ht"])) for li in lines)
    tva_normal = sum(Decimal(str(li["tva_normal"])) for li in lines)
    tva_marge = sum(Decimal(str(li["tva_marge"])) for li in lines)
    last_moves = [li["last_move_at"] for li in lines if li["last_move_at"]]
    return {
        "stock_id": str(stock.id),
        "stock_name": stock.name,
        "customer_id": str(customer.id) if customer else None,
        "customer_name": customer.name if customer else None,
        "product_count": len(lines),
        "qty_en_depot": sum(li["qty_en_depot"] for li in lines),
        "qty_facture_non_payee": sum(li["qty_facture_non_payee"] for li in lines),
        "total_ht": _money(Decimal(total_ht)),
        "total_tva_normal": _money(Decimal(tva_normal)),
        "total_tva_marge": _money(Decimal(tva_marge)),
        "total_ttc": _money(Decimal(total_ht + tva_normal + tva_marge)),
        "last_move_at": max(last_moves) if last_moves else None,
    }


# =========================================================
# Job : factures de dépôt impayées
# =========================================================
def run_check_unpaid(db: Session, now: Optional[datetime] = None, days: int = 30) -> Dict[str, Any]:
    now = now or utcnow()
    threshold = now - timedelta(days=days)

    invoice_moves = (
        db.execute(
            select(ConsignmentMove)
            .where(
                ConsignmentMove.type == ConsignmentMoveType.INVOICE.value,
                ConsignmentMove.created_at < threshold,
            )
            .order_by(ConsignmentMove.created_at.asc())
        )
        .scalars()
        .all()
    )

    if not invoice_moves:
        return {"ok": True, "unpaid": 0, "threshold_days": days, "checked": 0,
                "notifications_created": 0, "message": "Aucun impayé"}

    unpaid = 0
    created = 0
    for move in invoice_moves:
        try:
            paid = db.execute(
                select(ConsignmentMove.id)
                .where(
                    ConsignmentMove.invoice_item_id == move.invoice_item_id,
                    ConsignmentMove.type == ConsignmentMoveType.PAYMENT.value,
                )
                .limit(1)
            ).first()
            if paid is not None:
                continue
            unpaid += 1

            consignment = db.get(Consignment, move.consignment_id)
            stock = db.get(Stock, move.stock_id)
            product = consignment.product if consignment else None
            customer = db.get(Customer, consignment.customer_id) if consignment and consignment.customer_id else None

            stock_name = stock.name if stock else "Inconnu"
            product_name = product.name if product else "Inconnu"
            product_sku = (product.sku if product else None) or ""
            days_overdue = (now - as_utc(move.created_at)).days
            who = f" ({customer.name})" if customer else ""

            db.add(Notification(
                user_id=None,
                type="consignment_unpaid",
                title=f"Facture impayée depuis {days_overdue} jours",
                message=(
                    f'Le produit "{product_name}" ({product_sku}) chez "{stock_name}"{who} '
                    f"est facturé mais non payé depuis {days_overdue} jours."
                ),
                severity="urgent" if days_overdue > UNPAID_URGENT_DAYS else "warning",
                link=f"/consignments?stock_id={move.stock_id}",
                read=False,
            ))
            db.commit()
            created += 1
        except Exception:
            db.rollback()
            logger.exception("Impayés dépôt : échec sur le mouvement %s", move.id)

    logger.info("Impayés dépôt : %d / %d mouvement(s) INVOICE", unpaid, len(invoice_moves))
    return {"ok": True, "unpaid": unpaid, "threshold_days": days, "checked": len(invoice_moves),
            "notifications_created": created}


# =========================================================
# Job : synchronisation factures -> mouvements
# =========================================================
def _get_or_create_consignment(db: Session, stock_id, product_id, customer_id) -> Consignment:
    consignment = db.execute(
        select(Consignment).where(
            Consignment.stock_id == stock_id,
            Consignment.product_id == product_id,
        )
    ).scalar_one_or_none()
    if consignment is None:
        consignment = Consignment(stock_id=stock_id, product_id=product_id, customer_id=customer_id)
        db.add(consignment)
        db.flush()
    elif customer_id and consignment.customer_id != customer_id:
        consignment.customer_id = customer_id
    return consignment


def _move_exists(db: Session, invoice_item_id, move_type: str) -> bool:
    return db.execute(
        select(ConsignmentMove.id)
        .where(
            ConsignmentMove.invoice_item_id == invoice_item_id,
            ConsignmentMove.type == move_type,
        )
        .limit(1)
    ).first() is not None


def run_sync_invoices(db: Session, now: Optional[datetime] = None,
                      since: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    since = since or (now - SYNC_WINDOW)

    rows = db.execute(
        select(InvoiceItem, Invoice)
        .join(Invoice, Invoice.id == InvoiceItem.invoice_id)
        .where(
            InvoiceItem.stock_id.is_not(None),
            Invoice.updated_at >= since,
        )
    ).all()

    stock_ids = {item.stock_id for item, _ in rows}
    stocks = {
        s.id: s
        for s in db.execute(select(Stock).where(Stock.id.in_(stock_ids))).scalars().all()
    } if stock_ids else {}
    relevant = [(item, inv) for item, inv in rows if is_subcontractor_stock(stocks.get(item.stock_id))]

    processed = 0
    invoice_moves = 0
    payment_moves = 0
    errors = 0

    for item, invoice in relevant:
        processed += 1
        qty = item.qty or 0
        if qty <= 0:
            continue

        if invoice.status in ("sent", "draft"):
            move_type = ConsignmentMoveType.INVOICE.value
        elif invoice.status == "paid":
            move_type = ConsignmentMoveType.PAYMENT.value
        else:
            continue

        try:
            if _move_exists(db, item.id, move_type):
                continue

            consignment = _get_or_create_consignment(db, item.stock_id, item.product_id, invoice.customer_id)
            db.add(ConsignmentMove(
                consignment_id=consignment.id,
                stock_id=item.stock_id,
                product_id=item.product_id,
                invoice_id=invoice.id,
                invoice_item_id=item.id,
                type=move_type,
                qty=qty,
                unit_price_ht=item.unit_price_ht or 0,
                vat_rate=vat_fraction(item.tax_rate),
                vat_regime=vat_regime_for(item.product),
            ))
            db.commit()
            if move_type == ConsignmentMoveType.INVOICE.value:
                invoice_moves += 1
            else:
                payment_moves += 1
        except Exception:
            db.rollback()
            errors += 1
            logger.exception("Sync factures dépôt : échec sur la ligne %s", item.id)

    logger.info(
        "Sync factures dépôt : %d ligne(s), %d INVOICE, %d PAYMENT, %d erreur(s)",
        processed, invoice_moves, payment_moves, errors,
    )
    return {
        "ok": True,
        "processed": processed,
        "invoice_moves_created": invoice_moves,
        "payment_moves_created": payment_moves,
        "errors": errors,
        "since": as_utc(since).isoformat(),
    }
