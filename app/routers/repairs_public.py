# app/routers/repairs_public.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.timeutils import PARIS_TZ, as_utc, utcnow
from app.db.models import RepairPublicLink, RepairTicket
from app.db.session import get_async_session
from app.services.emails import ticket_ref
from app.services.repairs import STATUS_LABELS

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

# Page publique : AUCUNE dépendance d'authentification
router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["repairs-public"],
)


def _render(request: Request, status_code: int = 200, **ctx):
    ctx.setdefault("error", None)
    ctx["company_name"] = settings.COMPANY_NAME
    ctx["company_phone"] = settings.COMPANY_PHONE
    return templates.TemplateResponse(request, "public/repair_status.html", ctx, status_code=status_code)


def _fmt(dt) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).astimezone(PARIS_TZ).strftime("%d/%m/%Y")


@router.get("/repairs-public-status", response_class=HTMLResponse)
async def repair_public_status(
    request: Request,
    token: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_async_session),
):
    if not token:
        return _render(request, 400, error="Lien de suivi incomplet.")

    link = (
        await session.execute(select(RepairPublicLink).where(RepairPublicLink.token == token))
    ).scalar_one_or_none()
    if link is None:
        return _render(request, 404, error="Lien de suivi introuvable.")
    if link.revoked or as_utc(link.expires_at) <= utcnow():
        return _render(request, 410, error="Ce lien de suivi a expiré.")

    ticket = await session.get(RepairTicket, link.repair_id)
    if ticket is None:
        return _render(request, 404, error="Réparation introuvable.")

    return _render(
        request,
        ticket_ref=ticket_ref(ticket.id),
        device=f"{ticket.device_brand} {ticket.device_model}".strip(),
        deposit_date=_fmt(ticket.created_at),
        updated_at=_fmt(ticket.updated_at),
        status_label=STATUS_LABELS.get(ticket.status, ticket.status),
    )
