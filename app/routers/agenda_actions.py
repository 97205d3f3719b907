# app/routers/agenda_actions.py
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.security import get_current_user_id
from app.core.timeutils import utcnow
from app.db.models import (
    AgendaEvent,
    AgendaReminder,
    AgendaReminderLog,
    AgendaSource,
    AgendaStatus,
    Notification,
    ReminderType,
)
from app.db.rpc import RpcClient, get_rpc
from app.db.session import get_async_session
from app.schemas.agenda import DailySummaryActionIn, ReminderActionIn
from app.services.agenda import delete_pending_reminders, schedule_reminders

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["agenda"],
)

REMINDER_ACTIONS = ("vu", "reporte", "fait")
SUMMARY_ACTIONS = ("reporter", "fait")
SNOOZE_DELAY = timedelta(hours=1)


async def _mark_notification_read(session: AsyncSession, notification_id: Optional[uuid.UUID],
                                  user_id: uuid.UUID) -> None:
    if not notification_id:
        return
    await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .values(read=True)
    )


async def _record_user_action(session: AsyncSession, event_id: uuid.UUID, action: str,
                              reminder_id: Optional[uuid.UUID],
                              notification_id: Optional[uuid.UUID]) -> None:
    """
    Trace l'action sur une ligne de log du rappel : `reminder_id` (id du log),
    sinon celle de la notification, sinon la plus récente.
    """
    stmt = select(AgendaReminderLog).where(AgendaReminderLog.event_id == event_id)
    if reminder_id:
        stmt = stmt.where(AgendaReminderLog.id == reminder_id)
    elif notification_id:
        stmt = stmt.where(AgendaReminderLog.notification_id == notification_id)
    stmt = stmt.order_by(AgendaReminderLog.delivered_at.desc()).limit(1)
    log = (await session.execute(stmt)).scalar_one_or_none()
    if log is not None:
        log.user_action = action
        log.action_at = utcnow()


# =========================================================
#   Action sur un rappel (vu / reporté / fait)
# =========================================================
@router.post("/agenda-reminder-action")
async def reminder_action(
    payload: ReminderActionIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.event_id or not payload.action:
        raise ApiError(400, "BAD_REQUEST", "event_id et action sont obligatoires")
    action = payload.action
    if action not in REMINDER_ACTIONS:
        raise ApiError(400, "BAD_REQUEST", "action invalide")

    ev = (
        await session.execute(
            select(AgendaEvent).where(AgendaEvent.id == payload.event_id, AgendaEvent.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not ev:
        raise ApiError(404, "NOT_FOUND", "Événement non trouvé")

    retry = ReminderType.retry_15m.value

    if action == "vu":
        # "vu" n'a de sens que pour un rendez-vous ; une tâche garde son statut
        if ev.source == AgendaSource.rdv.value and ev.status != AgendaStatus.fait.value:
            ev.status = AgendaStatus.vu.value
        await delete_pending_reminders(session, [ev.id], reminder_type=retry)

    elif action == "reporte":
        await delete_pending_reminders(session, [ev.id], reminder_type=retry)
        session.add(AgendaReminder(
            event_id=ev.id,
            run_at=utcnow() + SNOOZE_DELAY,
            type=retry,
            delivered=False,
            attempt=0,
        ))

    else:  # fait
        ev.status = AgendaStatus.fait.value
        await delete_pending_reminders(session, [ev.id])

    await _record_user_action(session, ev.id, action, payload.reminder_id, payload.notification_id)
    await _mark_notification_read(session, payload.notification_id, user_id)
    await session.commit()

    return {"ok": True, "action": action, "message": f'Action "{action}" effectuée avec succès'}


# =========================================================
#   Action groupée depuis le résumé quotidien
# =========================================================
@router.post("/agenda-daily-summary-action")
async def daily_summary_action(
    payload: DailySummaryActionIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    if not payload.event_ids or not payload.action:
        raise ApiError(400, "BAD_REQUEST", "event_ids (liste non vide) et action sont obligatoires")
    action = payload.action
    if action not in SUMMARY_ACTIONS:
        raise ApiError(400, "BAD_REQUEST", "action invalide (reporter ou fait)")

    events = (
        await session.execute(
            select(AgendaEvent).where(
                AgendaEvent.id.in_(payload.event_ids),
                AgendaEvent.user_id == user_id,
                AgendaEvent.archived.is_(False),
            )
        )
    ).scalars().all()
    if not events:
        raise ApiError(404, "NOT_FOUND", "Aucun événement trouvé")

    updated = 0
    errors = 0
    to_reschedule = []
    for ev in events:
        try:
            if action == "reporter":
                ev.event_date = ev.event_date + timedelta(days=1)
                to_reschedule.append(ev.id)
            else:
                ev.status = AgendaStatus.fait.value
            await delete_pending_reminders(session, [ev.id])
            await session.flush()
            updated += 1
        except Exception:
            errors += 1
            logger.exception("Résumé quotidien : action %s KO pour %s", action, ev.id)

    await _mark_notification_read(session, payload.notification_id, user_id)
    await session.commit()

    for event_id in to_reschedule:
        await schedule_reminders(rpc, event_id)

    if action == "reporter":
        message = f"{updated} tâche(s) reportée(s) à demain"
    else:
        message = f"{updated} tâche(s) marquée(s) comme terminée(s)"

    return {
        "ok": True,
        "action": action,
        "updated": updated,
        "errors": errors,
        "total": len(events),
        "message": message,
    }
