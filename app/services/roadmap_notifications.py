# app/services/roadmap_notifications.py
"""
Job horaire de la feuille de route (heure de Paris) :
  - bilan de fin de journée à `eod_hour` (défaut 17h), une fois par jour
  - rappels d'événements J-n (défaut J-1), une fois par événement et par jour
  - relais Telegram (bot partagé ou bot personnel actif)
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.timeutils import paris_day_bounds_utc, paris_now, utcnow
from app.db.models import (
    Event,
    RoadmapEntry,
    RoadmapNotification,
    UserSettingsRoadmap,
    UserTelegramBot,
)
from app.services import telegram

logger = logging.getLogger(__name__)

DEFAULT_EOD_HOUR = 17
DEFAULT_REMINDER_DAYS = [1]
EOD_ITEMS = 5


def _fmt_time(t) -> Optional[str]:
    return t.strftime("%H:%M") if t else None


def send_telegram(db: Session, user_settings: UserSettingsRoadmap, title: str, message: str) -> bool:
    text = telegram.format_notification(title, message)
    if (user_settings.telegram_mode or "shared") == "shared":
        if not user_settings.telegram_chat_id or not settings.TELEGRAM_BOT_TOKEN:
            return False
        return telegram.send_message(settings.TELEGRAM_BOT_TOKEN, user_settings.telegram_chat_id, text)

    bot = db.execute(
        select(UserTelegramBot).where(UserTelegramBot.user_id == user_settings.user_id)
    ).scalar_one_or_none()
    if bot is None or not bot.chat_id or bot.status != "active":
        return False
    return telegram.send_message(bot.bot_token, bot.chat_id, text)


def generate_eod_summary(db: Session, user_settings: UserSettingsRoadmap, now: datetime) -> bool:
    user_id = user_settings.user_id
    today = paris_now(now).date()
    day_start, day_end = paris_day_bounds_utc(today)

    existing = db.execute(
        select(RoadmapNotification.id)
        .where(
            RoadmapNotification.user_id == user_id,
            RoadmapNotification.type == "summary",
            RoadmapNotification.scheduled_at >= day_start,
            RoadmapNotification.scheduled_at < day_end,
        )
        .limit(1)
    ).first()
    if existing is not None:
        return False

    entries = (
        db.execute(
            select(RoadmapEntry)
            .where(RoadmapEntry.user_id == user_id, RoadmapEntry.date == today)
            .order_by(RoadmapEntry.position.asc())
        )
        .scalars()
        .all()
    )
    total = len(entries)
    done = sum(1 for e in entries if e.status == "fait")
    remaining = total - done
    tomorrow_count = db.execute(
        select(func.count(RoadmapEntry.id)).where(
            RoadmapEntry.user_id == user_id,
            RoadmapEntry.date == today + timedelta(days=1),
        )
    ).scalar_one()

    payload = {
        "title": "Bilan de la journée",
        "message": f"Aujourd'hui: {done}/{total} tâches terminées. {remaining} restantes.",
        "items": [
            {"id": str(e.id), "title": e.title, "time": _fmt_time(e.start_time), "status": e.status}
            for e in entries[:EOD_ITEMS]
        ],
        "summary": {"total": total, "done": done, "remaining": remaining, "tomorrow": tomorrow_count},
    }
    db.add(RoadmapNotification(
        user_id=user_id,
        type="summary",
        payload=payload,
        scheduled_at=now,
        channel="in_app",
        status="pending",
    ))
    db.commit()

    if user_settings.telegram_enabled:
        send_telegram(db, user_settings, payload["title"], payload["message"])
    return True


def generate_event_reminders(db: Session, user_settings: UserSettingsRoadmap, now: datetime) -> int:
    user_id = user_settings.user_id
    today = paris_now(now).date()
    day_start, day_end = paris_day_bounds_utc(today)
    created = 0

    for days_ahead in (user_settings.default_reminder_days or DEFAULT_REMINDER_DAYS):
        days_ahead = int(days_ahead)
        target = today + timedelta(days=days_ahead)
        events = (
            db.execute(select(Event).where(Event.user_id == user_id, Event.date == target))
            .scalars()
            .all()
        )
        for event in events:
            existing = db.execute(
                select(RoadmapNotification.id)
                .where(
                    RoadmapNotification.user_id == user_id,
                    RoadmapNotification.type == "reminder",
                    RoadmapNotification.event_id == event.id,
                    RoadmapNotification.scheduled_at >= day_start,
                    RoadmapNotification.scheduled_at < day_end,
                )
                .limit(1)
            ).first()
            if existing is not None:
                continue

            label = "demain" if days_ahead == 1 else f"dans {days_ahead} jours"
            payload = {
                "title": "Rappel d'événement",
                "message": f"{event.title} - {label}",
                "event_id": str(event.id),
                "items": [{"id": str(event.id), "title": event.title, "time": _fmt_time(event.start_time)}],
            }
            db.add(RoadmapNotification(
                user_id=user_id,
                type="reminder",
                payload=payload,
                event_id=event.id,
                scheduled_at=now,
                channel="in_app",
                status="pending",
            ))
            db.commit()
            created += 1

            if user_settings.telegram_enabled:
                send_telegram(db, user_settings, payload["title"], payload["message"])
    return created


def run_roadmap_notifications(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    hour = paris_now(now).hour

    users = db.execute(select(UserSettingsRoadmap)).scalars().all()
    summaries = 0
    reminders = 0
    errors = 0

    for user_settings in users:
        try:
            eod_hour = user_settings.eod_hour if user_settings.eod_hour is not None else DEFAULT_EOD_HOUR
            if hour == eod_hour and generate_eod_summary(db, user_settings, now):
                summaries += 1
            reminders += generate_event_reminders(db, user_settings, now)
        except Exception:
            db.rollback()
            errors += 1
            logger.exception("Feuille de route : échec pour l'utilisateur %s", user_settings.user_id)

    logger.info(
        "Feuille de route : %d utilisateur(s), %d bilan(s), %d rappel(s)",
        len(users), summaries, reminders,
    )
    return {"ok": True, "processed": len(users), "summaries": summaries,
            "reminders": reminders, "errors": errors}
