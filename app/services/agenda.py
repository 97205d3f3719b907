# app/services/agenda.py
"""
Helpers async partagés par les routers agenda (création / mise à jour / actions).
"""
from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import AgendaReminder, ReminderType
from app.db.rpc import RpcClient, RpcError

logger = logging.getLogger(__name__)

DEFAULT_REMINDERS = ["24h", "2h", "now"]
VALID_REMINDERS = {t.value for t in ReminderType} - {ReminderType.retry_15m.value}


async def delete_pending_reminders(
    session: AsyncSession,
    event_ids: Iterable[uuid.UUID],
    reminder_type: Optional[str] = None,
) -> int:
    """Supprime les rappels non livrés (tous, ou d'un type donné). Pas de commit."""
    stmt = delete(AgendaReminder).where(
        AgendaReminder.event_id.in_(list(event_ids)),
        AgendaReminder.delivered.is_(False),
    )
    if reminder_type:
        stmt = stmt.where(AgendaReminder.type == reminder_type)
    result = await session.execute(stmt)
    return result.rowcount or 0


async def schedule_reminders(rpc: RpcClient, event_id: uuid.UUID) -> bool:
    """
    (Re)crée les lignes de rappel via la procédure stockée.
    Un échec est journalisé mais ne bloque pas l'enregistrement de l'événement.
    """
    try:
        await rpc.call("create_agenda_reminders", p_event_id=str(event_id))
        return True
    except RpcError as exc:
        logger.warning("create_agenda_reminders KO pour %s : %s", event_id, exc.message)
        return False


def clean_reminder_list(values) -> list:
    if values is None:
        return list(DEFAULT_REMINDERS)
    return [v for v in values if v in VALID_REMINDERS]
