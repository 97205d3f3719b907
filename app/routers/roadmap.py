# app/routers/roadmap.py
from __future__ import annotations

import logging
import re
import uuid
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ApiError
from app.core.roles import CurrentUser, require_admin
from app.core.security import get_current_user_id
from app.core.timeutils import paris_today, utcnow
from app.db.models import Event, EventReminder, RoadmapEntry, RoadmapNotification, RoadmapTemplate
from app.db.session import get_async_session, get_db
from app.schemas.roadmap import (
    EventIn,
    EventOut,
    NotificationActionIn,
    RoadmapEntryOut,
    RoadmapNotificationOut,
    RoadmapTemplateOut,
    TemplateIn,
    WeekSaveIn,
)
from app.services.roadmap_notifications import run_roadmap_notifications

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["roadmap"],
)

DAY_NAMES = ["Lundi", "Mardi", "Mercredi", "Jeudi", "Vendredi", "Samedi", "Dimanche"]
ENTRY_STATUSES = ("todo", "vu", "fait")
MONTH_PREVIEW = 3
NOTIFICATIONS_LIMIT = 50

# id virtuel d'une occurrence de template : template-<uuid>-<YYYY-MM-DD>
TEMPLATE_ID_RE = re.compile(r"^template-([0-9a-fA-F-]{36})-(\d{4}-\d{2}-\d{2})$")


def monday_of(day: date) -> date:
    return day - timedelta(days=day.weekday())


def parse_template_id(value: Optional[str]):
    """Retourne (template_id, date) pour un id virtuel, sinon None."""
    m = TEMPLATE_ID_RE.match(value or "")
    if not m:
        return None
    try:
        return uuid.UUID(m.group(1)), date.fromisoformat(m.group(2))
    except ValueError:
        return None


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


def _fmt_time(t) -> Optional[str]:
    return t.strftime("%H:%M") if t else None


def _entry_dict(entry: RoadmapEntry) -> dict:
    data = RoadmapEntryOut.model_validate(entry).model_dump(mode="json")
    data["_is_template"] = False
    return data


def _virtual_entry(tpl: RoadmapTemplate, day: date, user_id: uuid.UUID) -> dict:
    return {
        "id": f"template-{tpl.id}-{day.isoformat()}",
        "user_id": str(user_id),
        "date": day.isoformat(),
        "title": tpl.title,
        "start_time": tpl.start_time.isoformat() if tpl.start_time else None,
        "end_time": tpl.end_time.isoformat() if tpl.end_time else None,
        "status": "todo",
        "origin": "template",
        "template_id": str(tpl.id),
        "position": tpl.position,
        "_is_template": True,
    }


# =========================================================
#   SEMAINE
# =========================================================
@router.get("/roadmap-week")
async def get_week(
    week_start: Optional[date] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if week_start is None:
        raise ApiError(400, "BAD_REQUEST", "week_start est obligatoire")

    monday = monday_of(week_start)
    friday = monday + timedelta(days=4)

    entries = (
        await session.execute(
            select(RoadmapEntry)
            .where(
                RoadmapEntry.user_id == user_id,
                RoadmapEntry.date >= monday,
                RoadmapEntry.date <= friday,
            )
            .order_by(RoadmapEntry.position.asc())
        )
    ).scalars().all()
    templates = (
        await session.execute(
            select(RoadmapTemplate).where(
                RoadmapTemplate.user_id == user_id,
                RoadmapTemplate.active.is_(True),
                RoadmapTemplate.day_of_week.between(1, 5),
            )
        )
    ).scalars().all()

    by_day: Dict[date, List[RoadmapEntry]] = defaultdict(list)
    for e in entries:
        by_day[e.date].append(e)

    days = []
    for i in range(5):
        day = monday + timedelta(days=i)
        real = by_day.get(day, [])
        from_templates = {e.template_id for e in real if e.template_id}
        items = [_entry_dict(e) for e in real]
        for tpl in templates:
            if tpl.day_of_week != i + 1 or tpl.applies_from > day or tpl.id in from_templates:
                continue
            items.append(_virtual_entry(tpl, day, user_id))
        items.sort(key=lambda it: it["position"] or 0)
        days.append({
            "date": day.isoformat(),
            "day_name": DAY_NAMES[i],
            "day_of_week": i + 1,
            "entries": items,
        })

    return {
        "ok": True,
        "week_start": monday.isoformat(),
        "week_end": friday.isoformat(),
        "days": days,
        "summary": {
            "total": len(entries),
            "done": sum(1 for e in entries if e.status == "fait"),
            "seen": sum(1 for e in entries if e.status == "vu"),
            "remaining": sum(1 for e in entries if e.status == "todo"),
        },
    }


@router.post("/roadmap-week")
async def save_week(
    payload: WeekSaveIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if payload.entries is None:
        raise ApiError(400, "BAD_REQUEST", "entries est obligatoire")

    for item in payload.entries:
        if item.status and item.status not in ENTRY_STATUSES:
            raise ApiError(400, "BAD_REQUEST", f"status invalide ({', '.join(ENTRY_STATUSES)})")

    saved: List[RoadmapEntry] = []
    for item in payload.entries:
        virtual = parse_template_id(item.id)
        if virtual:
            template_id, day = virtual
            entry = RoadmapEntry(
                user_id=user_id,
                date=item.date or day,
                title=(item.title or "").strip(),
                start_time=item.start_time,
                end_time=item.end_time,
                status=item.status or "todo",
                origin="template",
                template_id=template_id,
                position=item.position or 0,
            )
            session.add(entry)
            saved.append(entry)
            continue

        existing = None
        entry_id = _as_uuid(item.id)
        if entry_id:
            existing = (
                await session.execute(
                    select(RoadmapEntry).where(RoadmapEntry.id == entry_id, RoadmapEntry.user_id == user_id)
                )
            ).scalar_one_or_none()

        if existing:
            if item.title is not None:
                existing.title = item.title.strip()
            existing.start_time = item.start_time
            existing.end_time = item.end_time
            if item.status:
                existing.status = item.status
            if item.position is not None:
                existing.position = item.position
            saved.append(existing)
            continue

        if item.date is None or not (item.title or "").strip():
            raise ApiError(400, "BAD_REQUEST", "date et title sont obligatoires")
        entry = RoadmapEntry(
            user_id=user_id,
            date=item.date,
            title=item.title.strip(),
            start_time=item.start_time,
            end_time=item.end_time,
            status=item.status or "todo",
            origin="manual",
            template_id=item.template_id,
            position=item.position or 0,
        )
        session.add(entry)
        saved.append(entry)

    await session.commit()
    logger.info("Roadmap : %d entrée(s) enregistrée(s) pour %s", len(saved), user_id)
    return {"ok": True, "entries": [RoadmapEntryOut.model_validate(e) for e in saved]}


# =========================================================
#   MOIS
# =========================================================
@router.get("/roadmap-month")
async def get_month(
    year: Optional[int] = Query(None),
    month: Optional[int] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if year is None or month is None:
        raise ApiError(400, "BAD_REQUEST", "year et month sont obligatoires")
    if not 1 <= month <= 12:
        raise ApiError(400, "BAD_REQUEST", "month doit être compris entre 1 et 12")

    first = date(year, month, 1)
    grid_start = monday_of(first)
    grid_end = grid_start + timedelta(days=41)

    entries = (
        await session.execute(
            select(RoadmapEntry)
            .where(
                RoadmapEntry.user_id == user_id,
                RoadmapEntry.date >= grid_start,
                RoadmapEntry.date <= grid_end,
            )
            .order_by(RoadmapEntry.position.asc())
        )
    ).scalars().all()
    events = (
        await session.execute(
            select(Event)
            .where(Event.user_id == user_id, Event.date >= grid_start, Event.date <= grid_end)
            .order_by(Event.start_time.asc())
        )
    ).scalars().all()

    entries_by_day: Dict[date, list] = defaultdict(list)
    for e in entries:
        entries_by_day[e.date].append(e)
    events_by_day: Dict[date, list] = defaultdict(list)
    for ev in events:
        events_by_day[ev.date].append(ev)

    weeks = []
    for w in range(6):
        days = []
        for d in range(7):
            day = grid_start + timedelta(days=w * 7 + d)
            day_entries = entries_by_day.get(day, [])
            day_events = events_by_day.get(day, [])
            days.append({
                "date": day.isoformat(),
                "day": day.day,
                "is_current_month": day.month == month,
                "entry_count": len(day_entries),
                "event_count": len(day_events),
                "entries": [
                    {"id": str(e.id), "title": e.title, "time": _fmt_time(e.start_time), "status": e.status}
                    for e in day_entries[:MONTH_PREVIEW]
                ],
                "events": [
                    {"id": str(ev.id), "title": ev.title, "time": _fmt_time(ev.start_time)}
                    for ev in day_events[:MONTH_PREVIEW]
                ],
            })
        weeks.append({"days": days})

    return {"ok": True, "year": year, "month": month, "weeks": weeks}


# =========================================================
#   TEMPLATES RÉCURRENTS
# =========================================================
async def _get_own_template(session: AsyncSession, template_id, user_id: uuid.UUID) -> RoadmapTemplate:
    tpl = (
        await session.execute(
            select(RoadmapTemplate).where(RoadmapTemplate.id == template_id, RoadmapTemplate.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not tpl:
        raise ApiError(404, "NOT_FOUND", "Template introuvable")
    return tpl


@router.post("/roadmap-template")
async def upsert_template(
    payload: TemplateIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    title = (payload.title or "").strip()
    if not title or payload.day_of_week is None:
        raise ApiError(400, "BAD_REQUEST", "title et day_of_week sont obligatoires")
    if not 1 <= payload.day_of_week <= 7:
        raise ApiError(400, "BAD_REQUEST", "day_of_week must be between 1 (Monday) and 7 (Sunday)")

    if payload.id:
        tpl = await _get_own_template(session, payload.id, user_id)
        tpl.title = title
        tpl.day_of_week = payload.day_of_week
        tpl.start_time = payload.start_time
        tpl.end_time = payload.end_time
        if payload.position is not None:
            tpl.position = payload.position
        if payload.active is not None:
            tpl.active = payload.active
    else:
        tpl = RoadmapTemplate(
            user_id=user_id,
            title=title,
            day_of_week=payload.day_of_week,
            start_time=payload.start_time,
            end_time=payload.end_time,
            position=payload.position or 0,
            active=payload.active is not False,
            applies_from=paris_today(),
        )
        session.add(tpl)

    propagated = 0
    if payload.id and payload.propagate_future:
        result = await session.execute(
            update(RoadmapEntry)
            .where(
                RoadmapEntry.template_id == tpl.id,
                RoadmapEntry.user_id == user_id,
                RoadmapEntry.date >= paris_today(),
            )
            .values(title=title, start_time=payload.start_time, end_time=payload.end_time)
        )
        propagated = result.rowcount or 0

    await session.commit()
    await session.refresh(tpl)
    return {"ok": True, "template": RoadmapTemplateOut.model_validate(tpl), "propagated": propagated}


@router.delete("/roadmap-template")
async def delete_template(
    id: Optional[uuid.UUID] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if not id:
        raise ApiError(400, "BAD_REQUEST", "id est obligatoire")
    tpl = await _get_own_template(session, id, user_id)
    # les entrées déjà matérialisées sont conservées
    await session.delete(tpl)
    await session.commit()
    return {"ok": True}


# =========================================================
#   ÉVÉNEMENTS
# =========================================================
def _build_reminders(items) -> List[EventReminder]:
    return [
        EventReminder(
            days_before=r.days_before if r.days_before is not None else 1,
            at=r.at,
            channel=r.channel or "in_app",
            active=r.active is not False,
        )
        for r in items or []
    ]


async def _get_own_calendar_event(session: AsyncSession, event_id, user_id: uuid.UUID) -> Event:
    ev = (
        await session.execute(select(Event).where(Event.id == event_id, Event.user_id == user_id))
    ).scalar_one_or_none()
    if not ev:
        raise ApiError(404, "NOT_FOUND", "Événement introuvable")
    return ev


@router.post("/roadmap-event")
async def create_event(
    payload: EventIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    title = (payload.title or "").strip()
    if not title or payload.date is None:
        raise ApiError(400, "BAD_REQUEST", "title et date sont obligatoires")

    ev = Event(
        user_id=user_id,
        title=title,
        date=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        location=payload.location,
        notes=payload.notes,
        recurrence=payload.recurrence,
    )
    ev.reminders = _build_reminders(payload.reminders)
    session.add(ev)
    await session.commit()
    return {"ok": True, "event": EventOut.model_validate(ev)}


@router.put("/roadmap-event")
async def update_event(
    payload: EventIn,
    id: Optional[uuid.UUID] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if not id:
        raise ApiError(400, "BAD_REQUEST", "id est obligatoire")
    ev = await _get_own_calendar_event(session, id, user_id)

    data = payload.model_dump(exclude_unset=True, exclude={"id", "reminders"})
    if "title" in data:
        title = (data["title"] or "").strip()
        if not title:
            raise ApiError(400, "BAD_REQUEST", "title ne peut pas être vide")
        data["title"] = title
    if "date" in data and data["date"] is None:
        raise ApiError(400, "BAD_REQUEST", "date ne peut pas être vide")
    for field, value in data.items():
        setattr(ev, field, value)

    # remplacement complet de la liste de rappels
    if payload.reminders is not None:
        ev.reminders = _build_reminders(payload.reminders)

    await session.commit()
    return {"ok": True, "event": EventOut.model_validate(ev)}


@router.delete("/roadmap-event")
async def delete_event(
    id: Optional[uuid.UUID] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if not id:
        raise ApiError(400, "BAD_REQUEST", "id est obligatoire")
    ev = await _get_own_calendar_event(session, id, user_id)
    await session.delete(ev)
    await session.commit()
    return {"ok": True}


# =========================================================
#   NOTIFICATIONS IN-APP
# =========================================================
@router.get("/roadmap-notifications")
async def list_roadmap_notifications(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    rows = (
        await session.execute(
            select(RoadmapNotification)
            .where(
                RoadmapNotification.user_id == user_id,
                RoadmapNotification.channel == "in_app",
                RoadmapNotification.sent_at.is_(None),
            )
            .order_by(RoadmapNotification.scheduled_at.desc())
            .limit(NOTIFICATIONS_LIMIT)
        )
    ).scalars().all()
    return {"ok": True, "notifications": [RoadmapNotificationOut.model_validate(n) for n in rows]}


@router.post("/roadmap-notifications")
async def roadmap_notifications_action(
    payload: NotificationActionIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if payload.action not in ("mark_seen", "mark_done"):
        raise ApiError(400, "BAD_REQUEST", "action doit être mark_seen ou mark_done")
    ids = payload.ids or []
    if not ids:
        raise ApiError(400, "BAD_REQUEST", "ids est obligatoire")

    marked_entries = 0
    if payload.action == "mark_done":
        notifications = (
            await session.execute(
                select(RoadmapNotification).where(
                    RoadmapNotification.id.in_(ids),
                    RoadmapNotification.user_id == user_id,
                )
            )
        ).scalars().all()
        entry_ids = []
        for n in notifications:
            for item in (n.payload or {}).get("items") or []:
                # les occurrences virtuelles n'existent pas en base
                entry_id = _as_uuid(item.get("id")) if isinstance(item, dict) else None
                if entry_id:
                    entry_ids.append(entry_id)
        if entry_ids:
            result = await session.execute(
                update(RoadmapEntry)
                .where(RoadmapEntry.id.in_(entry_ids), RoadmapEntry.user_id == user_id)
                .values(status="fait", updated_at=utcnow())
            )
            marked_entries = result.rowcount or 0

    await session.execute(
        update(RoadmapNotification)
        .where(RoadmapNotification.id.in_(ids), RoadmapNotification.user_id == user_id)
        .values(sent_at=utcnow(), status="sent")
    )
    await session.commit()

    if payload.action == "mark_seen":
        return {"ok": True, "marked": len(ids)}
    return {"ok": True, "marked_notifications": len(ids), "marked_entries": marked_entries}


# =========================================================
#   DÉCLENCHEMENT MANUEL DU JOB
# =========================================================
@router.post("/roadmap-process-notifications")
def process_notifications(
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return run_roadmap_notifications(db)
