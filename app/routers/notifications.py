# app/routers/notifications.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.security import get_current_user_id
from app.db.models import Notification
from app.db.session import get_async_session
from app.schemas.notifications import MarkReadIn, NotificationOut

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["notifications"],
)

LIST_LIMIT = 50


def _visible_to(user_id: uuid.UUID):
    # notifications personnelles + globales (user_id NULL)
    return or_(Notification.user_id == user_id, Notification.user_id.is_(None))


@router.get("/notifications-list")
async def list_notifications(
    unread_only: Optional[str] = Query(None),
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    stmt = select(Notification).where(_visible_to(user_id))
    if unread_only in ("1", "true"):
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc()).limit(LIST_LIMIT)
    rows = (await session.execute(stmt)).scalars().all()

    unread_count = (
        await session.execute(
            select(func.count(Notification.id)).where(_visible_to(user_id), Notification.read.is_(False))
        )
    ).scalar_one()

    return {
        "ok": True,
        "notifications": [NotificationOut.model_validate(n) for n in rows],
        "unread_count": unread_count,
    }


@router.post("/notifications-mark-read")
async def mark_notification_read(
    payload: MarkReadIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if not payload.notification_id:
        raise ApiError(400, "BAD_REQUEST", "notification_id est obligatoire")

    notif = (
        await session.execute(
            select(Notification).where(
                Notification.id == payload.notification_id,
                _visible_to(user_id),
            )
        )
    ).scalar_one_or_none()
    if not notif:
        raise ApiError(404, "NOT_FOUND", "Notification introuvable")
    # notification globale : partagée, jamais marquée lue pour un seul utilisateur
    if notif.user_id is None:
        return {"ok": True}

    notif.read = True
    await session.commit()
    return {"ok": True}


@router.post("/notifications-mark-all-read")
async def mark_all_notifications_read(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    await session.commit()
    return {"ok": True, "updated": result.rowcount or 0}
