# app/routers/agenda_events.py
from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.security import get_current_user_id
from app.db.models import AgendaEvent, AgendaSource, AgendaStatus
from app.db.rpc import RpcClient, RpcError, get_rpc
from app.db.session import get_async_session
from app.schemas.agenda import AgendaEventCreate, AgendaEventOut, AgendaEventUpdate
from app.services.agenda import clean_reminder_list, delete_pending_reminders, schedule_reminders

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["agenda"],
)

VALID_SOURCES = [s.value for s in AgendaSource]
VALID_STATUSES = [s.value for s in AgendaStatus]


async def _get_own_event(session: AsyncSession, event_id, user_id: uuid.UUID) -> AgendaEvent:
    res = await session.execute(
        select(AgendaEvent).where(
            AgendaEvent.id == event_id,
            AgendaEvent.user_id == user_id,
            AgendaEvent.archived.is_(False),
        )
    )
    ev = res.scalar_one_or_none()
    if not ev:
        raise ApiError(404, "NOT_FOUND", "Événement non trouvé")
    return ev


# =========================================================
#   CREATE
# =========================================================
@router.post("/agenda-events-create", status_code=201)
async def create_agenda_event(
    payload: AgendaEventCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    title = (payload.title or "").strip()
    if not title or payload.event_date is None or not payload.source:
        raise ApiError(400, "BAD_REQUEST", "title, event_date et source sont obligatoires")
    if payload.source not in VALID_SOURCES:
        raise ApiError(400, "BAD_REQUEST", "source doit être roadmap ou rdv")
    if payload.status and payload.status not in VALID_STATUSES:
        raise ApiError(400, "BAD_REQUEST", f"status invalide ({', '.join(VALID_STATUSES)})")

    ev = AgendaEvent(
        user_id=user_id,
        title=title,
        description=(payload.description or "").strip(),
        event_date=payload.event_date,
        event_time=payload.event_time,
        source=payload.source,
        status=payload.status or AgendaStatus.a_faire.value,
        important=payload.important is True,
        project=(payload.project or "").strip() or None,
        custom_reminders=clean_reminder_list(payload.custom_reminders),
    )
    session.add(ev)
    await session.commit()
    await session.refresh(ev)

    await schedule_reminders(rpc, ev.id)
    logger.info("Agenda : événement %s créé par %s", ev.id, user_id)
    return {"ok": True, "event": AgendaEventOut.model_validate(ev)}


# =========================================================
#   LIST
# =========================================================
@router.get("/agenda-events-list")
async def list_agenda_events(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    source: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    project: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    stmt = select(AgendaEvent).where(
        AgendaEvent.user_id == user_id,
        AgendaEvent.archived.is_(False),
    )
    if start_date:
        stmt = stmt.where(AgendaEvent.event_date >= start_date)
    if end_date:
        stmt = stmt.where(AgendaEvent.event_date <= end_date)
    if source in VALID_SOURCES:
        stmt = stmt.where(AgendaEvent.source == source)
    if status in VALID_STATUSES:
        stmt = stmt.where(AgendaEvent.status == status)
    if project:
        stmt = stmt.where(AgendaEvent.project == project)
    if search and search.strip():
        like = f"%{search.strip()}%"
        stmt = stmt.where(or_(AgendaEvent.title.ilike(like), AgendaEvent.description.ilike(like)))

    stmt = stmt.order_by(AgendaEvent.event_date.asc(), AgendaEvent.event_time.asc())
    events = (await session.execute(stmt)).scalars().all()
    return {
        "ok": True,
        "events": [AgendaEventOut.model_validate(e) for e in events],
        "count": len(events),
    }


# =========================================================
#   UPDATE (PUT / PATCH)
# =========================================================
@router.api_route("/agenda-events-update", methods=["PUT", "PATCH"])
async def update_agenda_event(
    payload: AgendaEventUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    if not payload.id:
        raise ApiError(400, "BAD_REQUEST", "id est obligatoire")

    ev = await _get_own_event(session, payload.id, user_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"id"})

    if "title" in changes:
        title = (changes["title"] or "").strip()
        if not title:
            raise ApiError(400, "BAD_REQUEST", "title ne peut pas être vide")
        ev.title = title
    if "description" in changes:
        ev.description = (changes["description"] or "").strip()
    if "source" in changes:
        if changes["source"] not in VALID_SOURCES:
            raise ApiError(400, "BAD_REQUEST", "source doit être roadmap ou rdv")
        ev.source = changes["source"]
    if "status" in changes:
        if changes["status"] not in VALID_STATUSES:
            raise ApiError(400, "BAD_REQUEST", f"status invalide ({', '.join(VALID_STATUSES)})")
        ev.status = changes["status"]
    if "important" in changes:
        ev.important = changes["important"] is True
    if "project" in changes:
        ev.project = (changes["project"] or "").strip() or None

    reschedule = False
    if "event_date" in changes and changes["event_date"] is not None and changes["event_date"] != ev.event_date:
        ev.event_date = changes["event_date"]
        reschedule = True
    if "event_time" in changes and changes["event_time"] != ev.event_time:
        ev.event_time = changes["event_time"]
        reschedule = True
    if "custom_reminders" in changes:
        reminders = clean_reminder_list(changes["custom_reminders"])
        if reminders != list(ev.custom_reminders or []):
            ev.custom_reminders = reminders
            reschedule = True

    done = ev.status == AgendaStatus.fait.value
    if done or reschedule:
        await delete_pending_reminders(session, [ev.id])

    await session.commit()
    await session.refresh(ev)

    if reschedule and not done:
        await schedule_reminders(rpc, ev.id)

    return {"ok": True, "event": AgendaEventOut.model_validate(ev)}


# =========================================================
#   DELETE (archivage logique)
# =========================================================
@router.delete("/agenda-events-delete")
async def delete_agenda_event(
    request: Request,
    id: Optional[str] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
    rpc: RpcClient = Depends(get_rpc),
):
    raw_id = id
    if not raw_id:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        raw_id = body.get("id") if isinstance(body, dict) else None
    if not raw_id:
        raise ApiError(400, "BAD_REQUEST", "id est obligatoire")
    try:
        event_id = uuid.UUID(str(raw_id))
    except ValueError:
        raise ApiError(400, "BAD_REQUEST", "id invalide")

    ev = await _get_own_event(session, event_id, user_id)

    try:
        await rpc.call("archive_agenda_event", p_event_id=str(ev.id))
    except RpcError as exc:
        raise ApiError(500, "INTERNAL", f"Archivage impossible: {exc.message}")

    logger.info("Agenda : événement %s archivé par %s", event_id, user_id)
    return {"ok": True, "message": "Événement supprimé"}
