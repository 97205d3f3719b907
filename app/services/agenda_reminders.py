# app/services/agenda_reminders.py
"""
Traitement de la file `agenda_reminders_queue` (toutes les 5 minutes).

Les lignes de rappel sont créées par la procédure `create_agenda_reminders` ;
ici on se contente de consommer les lignes échues :
  - événement déjà "fait"   -> rappel marqué livré, pas de notification
  - sinon                   -> notification + livré + attempt+1 + log
  - événement important     -> une seule relance `retry_15m` (+15 min)
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.timeutils import utcnow
from app.db.models import (
    AgendaEvent,
    AgendaReminder,
    AgendaReminderLog,
    AgendaStatus,
    Notification,
    ReminderType,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
RETRY_DELAY = timedelta(minutes=15)


def format_event_datetime(event: AgendaEvent) -> str:
    txt = event.event_date.isoformat()
    if event.event_time:
        txt += " à " + event.event_time.strftime("%H:%M")
    return txt


def build_reminder_message(reminder_type: str, event: AgendaEvent) -> tuple[str, str]:
    kind = "rendez-vous" if event.source == "rdv" else "tâche"
    when = format_event_datetime(event)

    if reminder_type == ReminderType.h24.value:
        return (
            f"Rappel 24h : {event.title}",
            f"Votre {kind} est prévu(e) demain ({when})",
        )
    if reminder_type == ReminderType.h2.value:
        return (
            f"Rappel 2h : {event.title}",
            f"Votre {kind} est dans 2 heures ({when})",
        )
    if reminder_type == ReminderType.now.value:
        return (
            f"C'est maintenant : {event.title}",
            f"Votre {kind} commence maintenant",
        )
    if reminder_type == ReminderType.retry_15m.value:
        return (
            f"Rappel relance : {event.title}",
            f"Rappel important non traité pour votre {kind}",
        )
    return (event.title, "")


def _deliver(db: Session, reminder: AgendaReminder, now: datetime) -> None:
    event = reminder.event
    title, message = build_reminder_message(reminder.type, event)

    metadata: Optional[Dict[str, Any]] = None
    if event.important:
        # popup côté front pour les rappels importants
        metadata = {
            "is_important_reminder": True,
            "event_id": str(event.id),
            "reminder_id": str(reminder.id),
            "event_title": event.title,
            "event_datetime": format_event_datetime(event),
        }

    notif = Notification(
        user_id=event.user_id,
        type="agenda_reminder",
        title=title,
        message=message,
        severity="urgent" if event.important else "info",
        link="/agenda",
        read=False,
        meta=metadata,
    )
    db.add(notif)
    db.flush()

    reminder.delivered = True
    reminder.attempt = (reminder.attempt or 0) + 1

    db.add(AgendaReminderLog(
        event_id=event.id,
        reminder_type=reminder.type,
        notification_id=notif.id,
        delivered_at=now,
    ))

    # Une seule relance : jamais de relance d'une relance
    if event.important and reminder.type != ReminderType.retry_15m.value:
        db.add(AgendaReminder(
            event_id=event.id,
            run_at=now + RETRY_DELAY,
            type=ReminderType.retry_15m.value,
            delivered=False,
            attempt=0,
        ))
    db.flush()


def run_agenda_reminders(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()

    reminders = (
        db.execute(
            select(AgendaReminder)
            .join(AgendaEvent, AgendaEvent.id == AgendaReminder.event_id)
            .where(
                AgendaReminder.delivered.is_(False),
                AgendaReminder.run_at <= now,
            )
            .order_by(AgendaReminder.run_at.asc())
            .limit(BATCH_SIZE)
        )
        .unique()
        .scalars()
        .all()
    )

    if not reminders:
        return {"ok": True, "processed": 0, "errors": 0, "total": 0}

    logger.info("Rappels agenda : %d rappel(s) échu(s)", len(reminders))
    processed = 0
    errors = 0

    for reminder in reminders:
        reminder_id = reminder.id
        try:
            if reminder.event.status == AgendaStatus.fait.value:
                reminder.delivered = True
                db.commit()
                continue
            _deliver(db, reminder, now)
            db.commit()
            processed += 1
        except Exception:
            db.rollback()
            errors += 1
            logger.exception("Rappel %s : échec de traitement", reminder_id)

    logger.info("Rappels agenda : %d traité(s), %d erreur(s)", processed, errors)
    return {"ok": True, "processed": processed, "errors": errors, "total": len(reminders)}
