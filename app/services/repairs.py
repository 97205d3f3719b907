# app/services/repairs.py
"""
Règles partagées des tickets de réparation (routers + jobs).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.timeutils import utcnow
from app.db.models import RepairStatus, RepairStatusHistory, RepairTicket
from app.db.rpc import RpcError, call_rpc_sync

logger = logging.getLogger(__name__)

AUTO_ARCHIVE_BATCH = 500

VALID_STATUSES = [s.value for s in RepairStatus]

# statuts qui exigent des pièces toutes réservées
PARTS_REQUIRED_STATUSES = (RepairStatus.ready_to_return.value, RepairStatus.to_repair.value)

STATUS_LABELS = {
    "quote_todo": "Devis à faire",
    "parts_to_order": "Pièces à commander",
    "waiting_parts": "En attente de pièces",
    "to_repair": "À réparer",
    "in_repair": "En cours de réparation",
    "drying": "Séchage en cours",
    "ready_to_return": "Prêt à être récupéré",
    "awaiting_customer": "En attente du client",
    "delivered": "Livré",
    "archived": "Archivé",
}

CANNOT_ARCHIVE_MESSAGE = (
    "Impossible d'archiver: le ticket doit avoir une facture associée "
    "ou être en statut \"delivered\""
)


def short_ref(repair_id) -> str:
    return str(repair_id)[:8]


def can_archive(ticket: RepairTicket) -> bool:
    return ticket.invoice_id is not None or ticket.status == RepairStatus.delivered.value


def history_row(ticket: RepairTicket, new_status: str, user_id=None,
                note: Optional[str] = None) -> RepairStatusHistory:
    return RepairStatusHistory(
        repair_id=ticket.id,
        old_status=ticket.status,
        new_status=new_status,
        changed_by=user_id,
        note=note,
    )


def run_repairs_auto_archive(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    tickets = (
        db.execute(
            select(RepairTicket)
            .where(RepairTicket.status == RepairStatus.delivered.value)
            .order_by(RepairTicket.updated_at.asc())
            .limit(AUTO_ARCHIVE_BATCH)
        )
        .scalars()
        .all()
    )
    if not tickets:
        return {"ok": True, "archived": 0, "total_delivered": 0,
                "message": "Aucun ticket livré à archiver"}

    archived = 0
    errors = 0
    for ticket in tickets:
        ticket_id = ticket.id
        try:
            call_rpc_sync(db, "fn_repair_release_reservations", p_repair_id=ticket_id)
            db.add(history_row(ticket, RepairStatus.archived.value, note="Archivage automatique"))
            ticket.status = RepairStatus.archived.value
            ticket.updated_at = now
            db.commit()
            archived += 1
        except RpcError:
            errors += 1
            logger.warning("Archivage auto : libération des réservations KO pour %s", ticket_id)
        except Exception:
            db.rollback()
            errors += 1
            logger.exception("Archivage auto : échec pour le ticket %s", ticket_id)

    logger.info("Archivage auto : %d / %d ticket(s) archivé(s)", archived, len(tickets))
    return {"ok": True, "archived": archived, "total_delivered": len(tickets), "errors": errors}
