# app/celery_tasks/emails.py
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.timeutils import as_utc, utcnow
from app.db.models import RepairItem, RepairPublicLink, RepairTicket
from app.db.session import SessionLocal
from app.services.emails import render_email, ticket_ref
from app.services.mailer import send_mail

# type d'email -> template
REPAIR_EMAILS = {
    "intake": "repair_intake",
    "ready": "repair_ready",
    "part_ordered": "repair_part_ordered",
    "delivered": "repair_delivered_thanks",
}

PUBLIC_LINK_TTL = timedelta(days=30)


# ============================================================
#  Helpers
# ============================================================
def public_status_url(token: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}{settings.API_PREFIX}/repairs-public-status?token={token}"


def _ensure_public_link(db: Session, ticket: RepairTicket) -> str:
    now = utcnow()
    links = db.execute(
        select(RepairPublicLink)
        .where(RepairPublicLink.repair_id == ticket.id, RepairPublicLink.revoked.is_(False))
        .order_by(RepairPublicLink.created_at.desc())
    ).scalars().all()
    for link in links:
        if as_utc(link.expires_at) > now:
            return public_status_url(link.token)

    link = RepairPublicLink(repair_id=ticket.id, token=str(uuid.uuid4()), expires_at=now + PUBLIC_LINK_TTL)
    db.add(link)
    db.flush()
    return public_status_url(link.token)


def build_repair_email_context(db: Session, kind: str, ticket: RepairTicket) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {
        "customer_name": ticket.customer.name if ticket.customer else "",
        "ticket_ref": ticket_ref(ticket.id),
        "device": f"{ticket.device_brand} {ticket.device_model}".strip(),
        "issue_description": ticket.issue_description,
    }
    if kind == "intake":
        ctx["status_url"] = _ensure_public_link(db, ticket)
    elif kind == "part_ordered":
        item: Optional[RepairItem] = db.execute(
            select(RepairItem)
            .where(
                RepairItem.repair_id == ticket.id,
                RepairItem.stock_id.is_(None),
                RepairItem.reserved.is_(False),
            )
            .order_by(RepairItem.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        ctx["part_name"] = item.product.name if item and item.product else "Pièce détachée"
        ctx["supplier_name"] = item.supplier_name if item else None
        ctx["expected_date"] = item.expected_date.strftime("%d/%m/%Y") if item and item.expected_date else None
    elif kind == "delivered":
        ctx["invoice_url"] = None
    return ctx


def enqueue_repair_email(kind: str, repair_id) -> None:
    """Côté API : l'email client ne doit jamais faire échouer la requête."""
    try:
        send_repair_email.delay(kind, str(repair_id))
    except Exception as e:
        logger.exception(f"[enqueue_repair_email] {kind} {repair_id} non mis en file : {e}")


# ============================================================
#  Tâche : email client d'une réparation
# ============================================================
@celery_app.task(name="emails.send_repair_email")
def send_repair_email(kind: str, repair_id: str):
    if kind not in REPAIR_EMAILS:
        logger.warning(f"[send_repair_email] type inconnu : {kind}")
        return False

    db = SessionLocal()
    try:
        ticket = db.get(RepairTicket, uuid.UUID(str(repair_id)))
        if ticket is None:
            logger.warning(f"[send_repair_email] ticket {repair_id} introuvable")
            return False
        email = ticket.customer.email if ticket.customer else None
        if not email:
            logger.info(f"[send_repair_email] {kind} : pas d'email client pour {repair_id}")
            return False

        ctx = build_repair_email_context(db, kind, ticket)
        db.commit()

        subject, html = render_email(REPAIR_EMAILS[kind], **ctx)
        sent = send_mail(email, subject, html)
        logger.info(f"[send_repair_email] {kind} -> {email} envoyé={sent}")
        return sent
    except Exception as e:
        logger.exception(f"[send_repair_email] Erreur ({kind}, {repair_id}) : {e}")
        db.rollback()
        return False
    finally:
        db.close()
