# app/routers/cron.py
"""
Déclenchement manuel des tâches planifiées.

Les mêmes fonctions tournent dans Celery beat (voir app/core/celery_app.py) ;
ces endpoints servent à relancer un passage à la main depuis l'admin.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.roles import CurrentUser, require_admin
from app.db.session import get_db
from app.services.agenda_daily_summary import run_agenda_daily_summary
from app.services.agenda_reminders import run_agenda_reminders
from app.services.repairs_digest import run_repairs_daily_digest

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["cron"],
)


@router.post("/agenda-reminders-run")
def agenda_reminders_run(
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return run_agenda_reminders(db)


@router.post("/agenda-daily-summary")
def agenda_daily_summary(
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return run_agenda_daily_summary(db)


@router.post("/repairs-daily-digest")
def repairs_daily_digest(
    current: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return run_repairs_daily_digest(db)
