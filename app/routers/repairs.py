# app/routers/repairs.py
from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.celery_tasks.emails import enqueue_repair_email, public_status_url
from app.core.config import settings
from app.core.errors import ApiError
from app.core.roles import ADMIN_ROLES, CurrentUser, require_admin, require_roles, require_shop
from app.core.timeutils import utcnow
from app.db.models import (
    Customer,
    Invoice,
    InvoiceItem,
    Product,
    ProductStock,
    RepairItem,
    RepairMedia,
    RepairPublicLink,
    RepairStatus,
    RepairStatusHistory,
    RepairTicket,
    Stock,
    StockReservation,
)
from app.db.rpc import RpcClient, RpcError, get_rpc
from app.db.session import get_async_session, get_db
from app.schemas.billing import InvoiceOut
from app.schemas.repairs import (
    AttachPartIn,
    CreateIntakeIn,
    DryingStartIn,
    MarkToOrderIn,
    OrderBatchIn,
    PublicLinkCreateIn,
    RepairIdIn,
    RepairItemOut,
    RepairStatusHistoryOut,
    RepairTicketOut,
    StatusUpdateIn,
)
from app.services.consignments import unit_price_ht_for
from app.services.repairs import (
    CANNOT_ARCHIVE_MESSAGE,
    PARTS_REQUIRED_STATUSES,
    STATUS_LABELS,
    VALID_STATUSES,
    can_archive,
    history_row,
    run_repairs_auto_archive,
    short_ref,
)
from app.services.storage import delete_repair_media_dir, store_repair_media

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["repairs"],
)

POWER_STATES = ("ok", "lcd_off", "no_sign")
VAT_REGIMES = ("normal", "margin")
DEFAULT_DRYING_MIN = 60
DEFAULT_LINK_TTL_DAYS = 30
INVOICE_DUE_DAYS = 30
INVOICEABLE_STATUSES = (RepairStatus.ready_to_return.value, RepairStatus.delivered.value)

require_archive = require_roles(*ADMIN_ROLES, detail="Seuls les administrateurs peuvent archiver des tickets")


# =========================================================
#   Helpers
# =========================================================
async def _get_ticket(session: AsyncSession, repair_id) -> RepairTicket:
    ticket = await session.get(RepairTicket, repair_id)
    if not ticket:
        raise ApiError(404, "NOT_FOUND", f"Ticket de réparation {repair_id} introuvable")
    return ticket


def _check_vat_regime(value: Optional[str]) -> None:
    if value is not None and value not in VAT_REGIMES:
        raise ApiError(400, "BAD_REQUEST", "vat_regime doit être normal ou margin")


def _check_quantity(value: Optional[int]) -> int:
    qty = 1 if value is None else value
    if qty <= 0:
        raise ApiError(400, "BAD_REQUEST", "quantity doit être un entier positif")
    return qty


async def _repair_id_from_request(request: Request, repair_id: Optional[str]) -> uuid.UUID:
    raw = repair_id
    if not raw:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        raw = body.get("repair_id") if isinstance(body, dict) else None
    if not raw:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ApiError(400, "BAD_REQUEST", "repair_id invalide")


async def _items_to_order(session: AsyncSession, repair_id: uuid.UUID) -> List[RepairItem]:
    res = await session.execute(
        select(RepairItem)
        .where(
            RepairItem.repair_id == repair_id,
            RepairItem.stock_id.is_(None),
            RepairItem.reserved.is_(False),
        )
        .order_by(RepairItem.created_at.asc())
    )
    return list(res.scalars().all())


# =========================================================
#   PRISE EN CHARGE
# =========================================================
@router.post("/repairs-create-intake", status_code=201)
async def create_intake(
    payload: CreateIntakeIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    required = ("customer_id", "device_brand", "device_model", "issue_description", "power_state")
    missing = [f for f in required if not getattr(payload, f)]
    if missing:
        raise ApiError(400, "BAD_REQUEST", f"Champs obligatoires manquants: {', '.join(missing)}")
    if payload.power_state not in POWER_STATES:
        raise ApiError(400, "BAD_REQUEST", f"power_state invalide ({', '.join(POWER_STATES)})")
    if payload.cgv_accepted is not True:
        raise ApiError(400, "CGV_NOT_ACCEPTED", "Les conditions générales doivent être acceptées")
    if not (payload.signature_base64 or "").strip():
        raise ApiError(400, "SIGNATURE_REQUIRED", "La signature du client est obligatoire")

    customer = await session.get(Customer, payload.customer_id)
    if not customer:
        raise ApiError(404, "NOT_FOUND", "Client introuvable")

    now = utcnow()
    ticket = RepairTicket(
        customer_id=customer.id,
        device_brand=payload.device_brand.strip(),
        device_model=payload.device_model.strip(),
        device_color=payload.device_color,
        imei=payload.imei,
        serial_number=payload.serial_number,
        pin_code=payload.pin_code,
        issue_description=payload.issue_description.strip(),
        power_state=payload.power_state,
        status=RepairStatus.quote_todo.value,
        assigned_tech=payload.assigned_tech,
        cgv_accepted_at=now,
    )
    session.add(ticket)
    await session.flush()

    media: List[Dict[str, str]] = []
    try:
        ticket.signature_url = store_repair_media(
            repair_id=ticket.id, kind="signature", data=payload.signature_base64
        )
        media.append({"kind": "signature", "url": ticket.signature_url})
        for photo in payload.photos_base64 or []:
            if photo:
                media.append({"kind": "photo", "url": store_repair_media(
                    repair_id=ticket.id, kind="photo", data=photo
                )})
    except ValueError as exc:
        delete_repair_media_dir(ticket.id)
        raise ApiError(400, "BAD_REQUEST", str(exc))

    for m in media:
        session.add(RepairMedia(repair_id=ticket.id, kind=m["kind"], file_url=m["url"]))
    session.add(RepairStatusHistory(
        repair_id=ticket.id,
        old_status=None,
        new_status=RepairStatus.quote_todo.value,
        changed_by=current.id,
        note="Prise en charge",
    ))
    await session.commit()
    await session.refresh(ticket)

    enqueue_repair_email("intake", ticket.id)
    logger.info("Réparation : ticket %s créé par %s", ticket.id, current.id)
    return {
        "ok": True,
        "data": {
            "ticket": RepairTicketOut.model_validate(ticket),
            "media": media,
            "message": f"Ticket #{short_ref(ticket.id).upper()} créé",
        },
    }


# =========================================================
#   CHANGEMENT DE STATUT
# =========================================================
@router.post("/repairs-status-update")
async def update_status(
    payload: StatusUpdateIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.repair_id or not payload.status:
        raise ApiError(400, "BAD_REQUEST", "repair_id et status sont obligatoires")
    new_status = payload.status
    if new_status not in VALID_STATUSES:
        raise ApiError(400, "BAD_REQUEST", f"Statut invalide. Valeurs autorisées: {', '.join(VALID_STATUSES)}")

    ticket = await _get_ticket(session, payload.repair_id)
    if ticket.status == new_status:
        return {
            "ok": True,
            "data": {
                "ticket": RepairTicketOut.model_validate(ticket),
                "history": None,
                "message": "Le statut est déjà défini sur cette valeur",
            },
        }

    if new_status in PARTS_REQUIRED_STATUSES:
        items = (
            await session.execute(select(RepairItem).where(RepairItem.repair_id == ticket.id))
        ).scalars().all()
        if not items:
            raise ApiError(409, "NO_PARTS", "Aucune pièce n'est associée à ce ticket")
        unreserved = [i for i in items if not i.reserved]
        if unreserved:
            raise ApiError(
                409,
                "PARTS_NOT_RESERVED",
                f"{len(unreserved)} pièce(s) non réservée(s) : réservez toutes les pièces avant ce statut",
                context={"unreserved_items": [str(i.id) for i in unreserved]},
            )

    if new_status == RepairStatus.archived.value and not can_archive(ticket):
        raise ApiError(409, "CANNOT_ARCHIVE", CANNOT_ARCHIVE_MESSAGE)

    history = history_row(ticket, new_status, current.id, payload.note)
    session.add(history)
    ticket.status = new_status
    ticket.updated_at = utcnow()
    await session.commit()
    await session.refresh(ticket)

    if new_status == RepairStatus.ready_to_return.value:
        enqueue_repair_email("ready", ticket.id)
    elif new_status == RepairStatus.delivered.value:
        enqueue_repair_email("delivered", ticket.id)

    return {
        "ok": True,
        "data": {
            "ticket": RepairTicketOut.model_validate(ticket),
            "history": RepairStatusHistoryOut.model_validate(history),
            "message": f"Statut mis à jour : {STATUS_LABELS[new_status]}",
        },
    }


# =========================================================
#   PIÈCES : réservation sur stock
# =========================================================
@router.post("/repairs-attach-part")
async def attach_part(
    payload: AttachPartIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    if not payload.repair_id or not payload.product_id or not payload.stock_id:
        raise ApiError(400, "BAD_REQUEST", "repair_id, product_id et stock_id sont obligatoires")
    qty = _check_quantity(payload.quantity)
    _check_vat_regime(payload.vat_regime)

    ticket = await _get_ticket(session, payload.repair_id)
    product = await session.get(Product, payload.product_id)
    if not product:
        raise ApiError(404, "NOT_FOUND", "Produit introuvable")
    stock = await session.get(Stock, payload.stock_id)
    if not stock:
        raise ApiError(404, "NOT_FOUND", "Stock introuvable")

    # produit demandé + parent (variante) ou enfants (produit parent)
    candidates = [product.id]
    if product.parent_id:
        candidates.append(product.parent_id)
    else:
        children = (
            await session.execute(select(Product.id).where(Product.parent_id == product.id))
        ).scalars().all()
        candidates.extend(children)

    rows = (
        await session.execute(
            select(ProductStock).where(
                ProductStock.stock_id == stock.id,
                ProductStock.product_id.in_(candidates),
            )
        )
    ).scalars().all()
    eligible = [r for r in rows if (r.quantity or 0) >= qty]
    if not eligible:
        if rows:
            found = [{"product_id": str(r.product_id), "quantity": r.quantity} for r in rows]
        else:
            found = [str(c) for c in candidates]
        raise ApiError(
            422,
            "INSUFFICIENT_STOCK",
            f"Stock insuffisant dans {stock.name} (demandé : {qty})",
            context={"candidates": found},
        )
    chosen = max(eligible, key=lambda r: r.quantity)

    item = (
        await session.execute(
            select(RepairItem).where(
                RepairItem.repair_id == ticket.id,
                RepairItem.product_id == chosen.product_id,
                RepairItem.stock_id == stock.id,
            )
        )
    ).scalar_one_or_none()
    if item is None:
        item = RepairItem(repair_id=ticket.id, product_id=chosen.product_id, stock_id=stock.id)
        session.add(item)
    item.quantity = qty
    item.reserved = False
    if payload.purchase_price is not None:
        item.purchase_price = payload.purchase_price
    if payload.vat_regime is not None:
        item.vat_regime = payload.vat_regime
    await session.commit()

    try:
        reservation = await rpc.call(
            "fn_repair_reserve_stock",
            p_repair_id=str(ticket.id),
            p_product_id=str(chosen.product_id),
            p_stock_id=str(stock.id),
            p_qty=qty,
        )
    except RpcError as exc:
        if exc.matches("stock insuffisant", "insufficient stock"):
            raise ApiError(422, "INSUFFICIENT_STOCK", exc.message,
                           context={"candidates": [{"product_id": str(chosen.product_id),
                                                    "quantity": chosen.quantity}]})
        raise ApiError(500, "RPC_ERROR", f"Réservation impossible: {exc.message}")

    await session.refresh(item)
    active = (
        await session.execute(
            select(StockReservation).where(
                StockReservation.repair_id == ticket.id,
                StockReservation.released.is_(False),
            )
        )
    ).scalars().all()

    return {
        "ok": True,
        "data": {
            "item": RepairItemOut.model_validate(item),
            "reservation": reservation,
            "reservations": [
                {"id": str(r.id), "product_id": str(r.product_id), "stock_id": str(r.stock_id), "qty": r.qty}
                for r in active
            ],
            "message": f"Pièce {product.name} réservée ({qty})",
        },
    }


# =========================================================
#   PIÈCES : à commander
# =========================================================
@router.post("/repairs-mark-to-order")
async def mark_to_order(
    payload: MarkToOrderIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.repair_id or not payload.product_id:
        raise ApiError(400, "BAD_REQUEST", "repair_id et product_id sont obligatoires")
    qty = _check_quantity(payload.quantity)
    _check_vat_regime(payload.vat_regime)

    ticket = await _get_ticket(session, payload.repair_id)
    product = await session.get(Product, payload.product_id)
    if not product:
        raise ApiError(404, "NOT_FOUND", "Produit introuvable")

    item = (
        await session.execute(
            select(RepairItem).where(
                RepairItem.repair_id == ticket.id,
                RepairItem.product_id == product.id,
                RepairItem.stock_id.is_(None),
                RepairItem.reserved.is_(False),
            )
        )
    ).scalars().first()
    if item is None:
        item = RepairItem(repair_id=ticket.id, product_id=product.id, stock_id=None, reserved=False)
        session.add(item)
    item.quantity = qty
    if payload.supplier_name is not None:
        item.supplier_name = payload.supplier_name.strip() or None
    if payload.purchase_price is not None:
        item.purchase_price = payload.purchase_price
    if payload.vat_regime is not None:
        item.vat_regime = payload.vat_regime

    if ticket.status != RepairStatus.parts_to_order.value:
        session.add(history_row(ticket, RepairStatus.parts_to_order.value, current.id,
                                f"Pièce à commander : {product.name}"))
        ticket.status = RepairStatus.parts_to_order.value
        ticket.updated_at = utcnow()
    await session.commit()

    enqueue_repair_email("part_ordered", ticket.id)
    items = await _items_to_order(session, ticket.id)
    return {
        "ok": True,
        "data": {
            "items": [RepairItemOut.model_validate(i) for i in items],
            "status": ticket.status,
            "message": f"{product.name} ajoutée aux pièces à commander",
        },
    }


# =========================================================
#   PIÈCES : commande groupée fournisseur
# =========================================================
def _validate_batch_item(index: int, raw) -> tuple[Optional[Dict[str, Any]], List[str]]:
    errors = []
    out: Dict[str, Any] = {}
    prefix = f"items[{index}]"

    for field in ("repair_id", "product_id"):
        value = getattr(raw, field)
        if not value:
            errors.append(f"{prefix}.{field} obligatoire")
            continue
        try:
            out[field] = uuid.UUID(str(value))
        except ValueError:
            errors.append(f"{prefix}.{field} invalide")

    supplier = (raw.supplier_name or "").strip()
    if not supplier:
        errors.append(f"{prefix}.supplier_name obligatoire")
    out["supplier_name"] = supplier

    if not raw.expected_date:
        errors.append(f"{prefix}.expected_date obligatoire")
    else:
        try:
            out["expected_date"] = date.fromisoformat(str(raw.expected_date)[:10])
        except ValueError:
            errors.append(f"{prefix}.expected_date invalide (YYYY-MM-DD)")

    if raw.purchase_price is None:
        errors.append(f"{prefix}.purchase_price obligatoire")
    else:
        try:
            price = Decimal(str(raw.purchase_price))
        except InvalidOperation:
            price = Decimal("-1")
        if price < 0:
            errors.append(f"{prefix}.purchase_price doit être >= 0")
        out["purchase_price"] = price

    if raw.quantity is not None and raw.quantity <= 0:
        errors.append(f"{prefix}.quantity doit être > 0")
    out["quantity"] = raw.quantity

    if raw.vat_regime is not None and raw.vat_regime not in VAT_REGIMES:
        errors.append(f"{prefix}.vat_regime doit être normal ou margin")
    out["vat_regime"] = raw.vat_regime

    return (None if errors else out), errors


@router.post("/repairs-order-batch")
async def order_batch(
    payload: OrderBatchIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.items:
        raise ApiError(400, "BAD_REQUEST", "items doit être une liste non vide")

    parsed = []
    details: List[str] = []
    for i, raw in enumerate(payload.items):
        item, errs = _validate_batch_item(i, raw)
        details.extend(errs)
        if item:
            parsed.append(item)
    if details:
        raise ApiError(400, "BAD_REQUEST", "Données de commande invalides", context={"details": details})

    results = []
    touched: Dict[uuid.UUID, RepairTicket] = {}
    total_cost = Decimal("0")
    errors = 0

    for data in parsed:
        ticket = touched.get(data["repair_id"]) or await session.get(RepairTicket, data["repair_id"])
        if ticket is None:
            errors += 1
            results.append({"repair_id": str(data["repair_id"]), "product_id": str(data["product_id"]),
                            "ok": False, "error": "Ticket introuvable"})
            continue

        item = (
            await session.execute(
                select(RepairItem)
                .where(
                    RepairItem.repair_id == ticket.id,
                    RepairItem.product_id == data["product_id"],
                    RepairItem.reserved.is_(False),
                )
                .order_by(RepairItem.created_at.asc())
            )
        ).scalars().first()
        action = "updated"
        if item is None:
            item = RepairItem(repair_id=ticket.id, product_id=data["product_id"], stock_id=None,
                              reserved=False, quantity=data["quantity"] or 1)
            session.add(item)
            action = "created"
        elif data["quantity"]:
            item.quantity = data["quantity"]
        item.supplier_name = data["supplier_name"]
        item.expected_date = data["expected_date"]
        item.purchase_price = data["purchase_price"]
        if data["vat_regime"]:
            item.vat_regime = data["vat_regime"]

        touched[ticket.id] = ticket
        total_cost += data["purchase_price"] * (item.quantity or 1)
        results.append({"repair_id": str(ticket.id), "product_id": str(data["product_id"]),
                        "ok": True, "action": action})

    tickets_updated = 0
    for ticket in touched.values():
        if ticket.status != RepairStatus.waiting_parts.value:
            session.add(history_row(ticket, RepairStatus.waiting_parts.value, current.id, "Pièces commandées"))
            ticket.status = RepairStatus.waiting_parts.value
            ticket.updated_at = utcnow()
            tickets_updated += 1
    await session.commit()

    success = len(results) - errors
    return {
        "ok": True,
        "data": {
            "processed": len(results),
            "success": success,
            "errors": errors,
            "tickets_updated": tickets_updated,
            "total_cost_estimate": float(total_cost.quantize(Decimal("0.01"))),
            "results": results,
            "message": f"{success} pièce(s) commandée(s), {tickets_updated} ticket(s) en attente de pièces",
        },
    }


# =========================================================
#   SÉCHAGE
# =========================================================
@router.post("/repairs-drying-start")
async def drying_start(
    payload: DryingStartIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.repair_id:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    duration = DEFAULT_DRYING_MIN if payload.duration_min is None else payload.duration_min
    if duration <= 0:
        raise ApiError(400, "BAD_REQUEST", "duration_min doit être > 0")

    ticket = await _get_ticket(session, payload.repair_id)
    if ticket.status != RepairStatus.drying.value:
        raise ApiError(409, "INVALID_STATUS", "Le ticket doit être en statut \"drying\" pour lancer le séchage")

    now = utcnow()
    ticket.drying_start_at = now
    ticket.drying_duration_min = duration
    ticket.drying_end_at = now + timedelta(minutes=duration)
    ticket.drying_acknowledged_at = None
    await session.commit()
    await session.refresh(ticket)
    return {"ok": True, "data": {"ticket": RepairTicketOut.model_validate(ticket),
                                 "message": f"Séchage lancé pour {duration} min"}}


@router.post("/repairs-drying-ack")
async def drying_ack(
    payload: RepairIdIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.repair_id:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    ticket = await _get_ticket(session, payload.repair_id)
    ticket.drying_acknowledged_at = utcnow()
    await session.commit()
    await session.refresh(ticket)
    return {"ok": True, "data": {"ticket": RepairTicketOut.model_validate(ticket),
                                 "message": "Fin de séchage prise en compte"}}


# =========================================================
#   ARCHIVAGE
# =========================================================
@router.post("/repairs-archive")
async def archive_ticket(
    payload: RepairIdIn,
    current: CurrentUser = Depends(require_archive),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    if not payload.repair_id:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    ticket = await _get_ticket(session, payload.repair_id)

    if ticket.status == RepairStatus.archived.value:
        return {"ok": True, "data": {"ticket": RepairTicketOut.model_validate(ticket),
                                     "message": "Le ticket est déjà archivé"}}
    if not can_archive(ticket):
        raise ApiError(409, "CANNOT_ARCHIVE", CANNOT_ARCHIVE_MESSAGE)

    try:
        await rpc.call("fn_repair_release_reservations", p_repair_id=str(ticket.id))
    except RpcError as exc:
        raise ApiError(500, "RPC_ERROR", f"Libération des réservations impossible: {exc.message}")

    released = (
        await session.execute(
            select(func.count(StockReservation.id)).where(
                StockReservation.repair_id == ticket.id,
                StockReservation.released.is_(True),
            )
        )
    ).scalar_one()

    session.add(history_row(ticket, RepairStatus.archived.value, current.id, "Archivage manuel"))
    ticket.status = RepairStatus.archived.value
    ticket.updated_at = utcnow()
    await session.commit()
    await session.refresh(ticket)

    logger.info("Réparation : ticket %s archivé par %s", ticket.id, current.id)
    return {
        "ok": True,
        "data": {
            "ticket": RepairTicketOut.model_validate(ticket),
            "released_reservations": released,
            "message": (
                f"Ticket #{short_ref(ticket.id).upper()} archivé avec succès. "
                f"{released} réservation(s) libérée(s)."
            ),
        },
    }


@router.post("/repairs-auto-archive-run")
def auto_archive_run(
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Déclenchement manuel du job d'archivage (aussi planifié dans Celery)."""
    return run_repairs_auto_archive(db)


# =========================================================
#   FACTURE BROUILLON
# =========================================================
async def _load_invoice(session: AsyncSession, invoice_id) -> Optional[Invoice]:
    res = await session.execute(
        select(Invoice).where(Invoice.id == invoice_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


@router.post("/repairs-generate-invoice")
async def generate_invoice(
    payload: RepairIdIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    """
    Crée une facture brouillon à partir des pièces du ticket.
    La finalisation (numérotation, sortie de stock) reste dans billing-finalize-invoice.
    """
    if not payload.repair_id:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    ticket = await _get_ticket(session, payload.repair_id)

    if ticket.status not in INVOICEABLE_STATUSES:
        raise ApiError(
            409,
            "INVALID_STATUS",
            "Le ticket doit être en statut \"ready_to_return\" ou \"delivered\" pour générer une facture. "
            f"Statut actuel: {ticket.status}",
        )

    if ticket.invoice_id:
        existing = await _load_invoice(session, ticket.invoice_id)
        if existing is not None:
            return {
                "ok": True,
                "data": {
                    "invoice": InvoiceOut.model_validate(existing),
                    "already_exists": True,
                    "message": "Une facture existe déjà pour ce ticket",
                },
            }
        logger.warning("Réparation %s : facture %s introuvable, régénération", ticket.id, ticket.invoice_id)

    items = (
        await session.execute(
            select(RepairItem).where(RepairItem.repair_id == ticket.id).order_by(RepairItem.created_at.asc())
        )
    ).scalars().all()
    if not items:
        raise ApiError(409, "NO_ITEMS", "Impossible de générer une facture: aucune pièce n'est attachée à ce ticket")

    today = date.today()
    invoice = Invoice(
        customer_id=ticket.customer_id,
        status="draft",
        invoice_date=today,
        due_date=today + timedelta(days=INVOICE_DUE_DAYS),
        notes=(
            f"Facture pour réparation - Ticket #{short_ref(ticket.id)}\n"
            f"Appareil: {ticket.device_brand} {ticket.device_model}"
        ),
        created_by=current.id,
    )
    session.add(invoice)
    await session.flush()

    for index, item in enumerate(items, start=1):
        product = item.product
        session.add(InvoiceItem(
            invoice_id=invoice.id,
            product_id=item.product_id,
            description=product.name if product is not None else "Pièce de réparation",
            qty=item.quantity or 1,
            unit_price_ht=unit_price_ht_for(product) if product is not None else Decimal("0"),
            tax_rate=product.tax_rate if product is not None and product.tax_rate else Decimal("20"),
            line_order=index,
        ))
    ticket.invoice_id = invoice.id

    if ticket.status == RepairStatus.delivered.value:
        # archivage automatique ; un échec de libération ne bloque pas la facture
        try:
            await rpc.call("fn_repair_release_reservations", p_repair_id=str(ticket.id))
        except RpcError as exc:
            logger.warning("Réparation %s : libération des réservations KO : %s", ticket.id, exc.message)
        session.add(history_row(ticket, RepairStatus.archived.value, current.id, "Archivage après facturation"))
        ticket.status = RepairStatus.archived.value

    ticket.updated_at = utcnow()
    await session.commit()

    invoice = await _load_invoice(session, invoice.id)
    logger.info("Réparation : facture brouillon %s créée pour le ticket %s", invoice.id, ticket.id)
    return {
        "ok": True,
        "data": {
            "invoice": InvoiceOut.model_validate(invoice),
            "invoice_id": invoice.id,
            "invoice_url": f"/invoices/{invoice.id}",
            "message": (
                f"Facture draft #{short_ref(invoice.id)} créée avec succès. "
                "La facture doit être finalisée via le module de facturation."
            ),
        },
    }


# =========================================================
#   SUPPRESSION
# =========================================================
@router.delete("/repairs-delete")
async def delete_ticket(
    request: Request,
    repair_id: Optional[str] = Query(None),
    current: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    ticket_id = await _repair_id_from_request(request, repair_id)
    ticket = await _get_ticket(session, ticket_id)

    try:
        await rpc.call("fn_repair_release_reservations", p_repair_id=str(ticket.id))
    except RpcError as exc:
        raise ApiError(500, "RPC_ERROR", f"Libération des réservations impossible: {exc.message}")

    files_deleted = delete_repair_media_dir(ticket.id)
    for model in (RepairMedia, RepairItem, RepairStatusHistory, RepairPublicLink, StockReservation):
        await session.execute(delete(model).where(model.repair_id == ticket.id))
    await session.delete(ticket)
    await session.commit()

    logger.info("Réparation : ticket %s supprimé par %s", ticket_id, current.id)
    return {
        "ok": True,
        "files_deleted": files_deleted,
        "message": f"Ticket #{short_ref(ticket_id).upper()} supprimé",
    }


# =========================================================
#   LIEN PUBLIC DE SUIVI
# =========================================================
@router.post("/repairs-public-link-create")
async def create_public_link(
    payload: PublicLinkCreateIn,
    current: CurrentUser = Depends(require_shop),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.repair_id:
        raise ApiError(400, "BAD_REQUEST", "Champ obligatoire manquant: repair_id")
    ttl_days = DEFAULT_LINK_TTL_DAYS if payload.ttl_days is None else payload.ttl_days
    if ttl_days <= 0:
        raise ApiError(400, "BAD_REQUEST", "ttl_days doit être > 0")

    ticket = await _get_ticket(session, payload.repair_id)
    link = RepairPublicLink(
        repair_id=ticket.id,
        token=str(uuid.uuid4()),
        expires_at=utcnow() + timedelta(days=ttl_days),
    )
    session.add(link)
    await session.commit()

    return {
        "ok": True,
        "data": {
            "token": link.token,
            "expires_at": link.expires_at,
            "public_url": public_status_url(link.token),
        },
    }
