# app/services/repairs_digest.py
"""
Digest quotidien des pièces à commander (17h Paris).

- pièces = items non réservés, sans stock, sur tickets parts_to_order / waiting_parts
- regroupement par fournisseur ("Non défini" par défaut)
- destinataires : profils MAGASIN / ADMIN / ADMIN_FULL, selon leurs préférences
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.roles import SHOP_ROLES
from app.core.timeutils import WEEKDAYS_EN, paris_now, utcnow
from app.db.models import (
    Customer,
    Notification,
    Product,
    Profile,
    RepairDailyLog,
    RepairItem,
    RepairStatus,
    RepairTicket,
    UserNotificationSettings,
)
from app.services.emails import render_email
from app.services.mailer import send_mail

logger = logging.getLogger(__name__)

DEFAULT_DIGEST_HOUR = 17
DEFAULT_ACTIVE_DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday"]
DEFAULT_SUPPLIER = "Non défini"


def fetch_parts_to_order(db: Session) -> List[Dict[str, Any]]:
    rows = db.execute(
        select(RepairItem, Product, RepairTicket, Customer)
        .join(RepairTicket, RepairTicket.id == RepairItem.repair_id)
        .join(Product, Product.id == RepairItem.product_id)
        .outerjoin(Customer, Customer.id == RepairTicket.customer_id)
        .where(
            RepairItem.reserved.is_(False),
            RepairItem.stock_id.is_(None),
            RepairTicket.status.in_([
                RepairStatus.parts_to_order.value,
                RepairStatus.waiting_parts.value,
            ]),
        )
        .order_by(RepairItem.created_at.asc())
    ).all()

    parts = []
    for item, product, ticket, customer in rows:
        parts.append({
            "repair_id": str(ticket.id),
            "product_id": str(product.id),
            "product_name": product.name,
            "product_sku": product.sku,
            "quantity": item.quantity,
            "purchase_price": item.purchase_price,
            "supplier_name": item.supplier_name,
            "customer_name": customer.name if customer else None,
        })
    return parts


def build_digest_payload(parts: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    by_supplier: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    total = Decimal("0")

    for part in parts:
        supplier = part["supplier_name"] or DEFAULT_SUPPLIER
        by_supplier.setdefault(supplier, []).append(part)
        if part["purchase_price"] and part["quantity"]:
            total += Decimal(str(part["purchase_price"])) * part["quantity"]

    return {
        "date": paris_now(now).date().isoformat(),
        "total_parts": len(parts),
        "total_cost_estimate": f"{total:.2f}",
        "suppliers": [
            {
                "supplier": supplier,
                "parts_count": len(items),
                "parts": [
                    {
                        "product_name": p["product_name"],
                        "product_sku": p["product_sku"],
                        "quantity": p["quantity"],
                        "repair_id": p["repair_id"],
                        "customer_name": p["customer_name"],
                    }
                    for p in items
                ],
            }
            for supplier, items in by_supplier.items()
        ],
        "generated_at": now.isoformat(),
    }


def _user_prefs(db: Session, user_id) -> Dict[str, Any]:
    prefs = db.get(UserNotificationSettings, user_id)
    return {
        "hour": prefs.daily_digest_hour if prefs and prefs.daily_digest_hour is not None else DEFAULT_DIGEST_HOUR,
        "active_days": prefs.active_days if prefs and prefs.active_days is not None else DEFAULT_ACTIVE_DAYS,
        "email": prefs.enable_email if prefs and prefs.enable_email is not None else True,
        "popup": prefs.enable_popup if prefs and prefs.enable_popup is not None else True,
    }


def run_repairs_daily_digest(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    local = paris_now(now)
    current_day = WEEKDAYS_EN[local.weekday()]

    parts = fetch_parts_to_order(db)
    logger.info("Digest réparations : %d pièce(s) à commander", len(parts))

    if not parts:
        return {"ok": True, "parts_to_order": 0, "message": "Aucune pièce à commander"}

    payload = build_digest_payload(parts, now)
    suppliers = [s["supplier"] for s in payload["suppliers"]]

    users = (
        db.execute(select(Profile).where(Profile.role.in_(SHOP_ROLES)))
        .scalars()
        .all()
    )

    notifications_created = 0
    emails_sent = 0
    emails_to_send = 0
    subject, html = render_email("repairs_digest", payload=payload)

    for user in users:
        try:
            prefs = _user_prefs(db, user.id)
            # L'heure préférée est informative : le planificateur tourne à 17h
            if current_day not in prefs["active_days"]:
                logger.info("Digest : jour %s inactif pour %s", current_day, user.email)
                continue

            if prefs["popup"]:
                db.add(Notification(
                    user_id=user.id,
                    type="repair_parts_alert",
                    title=f"Pièces à commander ({len(parts)})",
                    message=(
                        f"{len(parts)} pièce(s) à commander pour un montant estimé de "
                        f"{payload['total_cost_estimate']}€. Fournisseurs: {', '.join(suppliers)}"
                    ),
                    severity="info",
                    link="/atelier/parts-to-order",
                    read=False,
                    meta=payload,
                ))
                db.commit()
                notifications_created += 1

            if prefs["email"] and user.email:
                emails_to_send += 1
                if send_mail(user.email, subject, html):
                    emails_sent += 1
        except Exception:
            db.rollback()
            logger.exception("Digest : échec pour l'utilisateur %s", user.id)

    db.add(RepairDailyLog(
        log_date=local.date(),
        parts_count=len(parts),
        notifications_sent=notifications_created,
        payload={**payload, "emails_to_send": emails_to_send, "current_day": current_day},
    ))
    db.commit()

    return {
        "ok": True,
        "date": payload["date"],
        "current_day": current_day,
        "parts_to_order": len(parts),
        "suppliers": len(suppliers),
        "total_cost_estimate": payload["total_cost_estimate"],
        "notifications_created": notifications_created,
        "emails_to_send": emails_to_send,
        "emails_sent": emails_sent,
        "message": (
            f"Digest quotidien traité: {len(parts)} pièces à commander, "
            f"{notifications_created} notifications créées, {emails_to_send} emails prévus"
        ),
    }
