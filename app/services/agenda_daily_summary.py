# app/services/agenda_daily_summary.py
"""
Résumé quotidien (19h Europe/Paris) des tâches non terminées du jour.
Une seule notification non lue par utilisateur et par jour.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.timeutils import paris_day_bounds_utc, paris_today, utcnow
from app.db.models import AgendaEvent, AgendaStatus, Notification

logger = logging.getLogger(__name__)

SUMMARY_TYPE = "agenda_daily_summary"


def _summary_exists(db: Session, user_id, day_start: datetime, day_end: datetime) -> bool:
    found = db.execute(
        select(Notification.id)
        .where(
            Notification.user_id == user_id,
            Notification.type == SUMMARY_TYPE,
            Notification.read.is_(False),
            Notification.created_at >= day_start,
            Notification.created_at < day_end,
        )
        .limit(1)
    ).first()
    return found is not None


def build_summary_message(events: List[AgendaEvent]) -> str:
    lines = []
    for ev in events:
        line = f"• {ev.title}"
        if ev.event_time:
            line += f" à {ev.event_time.strftime('%H:%M')}"
        lines.append(line)
    return "\n".join(lines)


def run_agenda_daily_summary(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    today = paris_today(now)
    day_start, day_end = paris_day_bounds_utc(today)

    events = (
        db.execute(
            select(AgendaEvent)
            .where(
                AgendaEvent.event_date == today,
                AgendaEvent.archived.is_(False),
                AgendaEvent.status != AgendaStatus.fait.value,
            )
            .order_by(AgendaEvent.event_time.asc())
        )
        .scalars()
        .all()
    )

    by_user: Dict[Any, List[AgendaEvent]] = defaultdict(list)
    for ev in events:
        by_user[ev.user_id].append(ev)

    logger.info("Résumé agenda %s : %d tâche(s), %d utilisateur(s)", today, len(events), len(by_user))

    sent = 0
    errors = 0
    for user_id, user_events in by_user.items():
        try:
            if _summary_exists(db, user_id, day_start, day_end):
                logger.info("Résumé déjà envoyé aujourd'hui pour %s", user_id)
                continue

            db.add(Notification(
                user_id=user_id,
                type=SUMMARY_TYPE,
                title=f"Feuille de route — Tâches non terminées ({len(user_events)})",
                message=build_summary_message(user_events),
                severity="warning",
                link=f"/agenda?date={today.isoformat()}",
                read=False,
                meta={
                    "is_daily_summary": True,
                    "date": today.isoformat(),
                    "event_ids": [str(ev.id) for ev in user_events],
                    "event_count": len(user_events),
                },
            ))
            db.commit()
            sent += 1
        except Exception:
            db.rollback()
            errors += 1
            logger.exception("Résumé agenda : échec pour l'utilisateur %s", user_id)

    return {"ok": True, "summaries_sent": sent, "errors": errors, "users_processed": len(by_user)}
