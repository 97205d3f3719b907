# app/celery_tasks/agenda.py
from __future__ import annotations

from loguru import logger

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.agenda_daily_summary import run_agenda_daily_summary
from app.services.agenda_reminders import run_agenda_reminders


@celery_app.task(name="agenda.reminders_run")
def agenda_reminders_run():
    """Consomme la file des rappels agenda échus (toutes les 5 minutes)."""
    db = SessionLocal()
    try:
        result = run_agenda_reminders(db)
        db.commit()
        logger.info(f"[agenda.reminders_run] {result}")
        return result
    except Exception as e:
        logger.exception(f"[agenda.reminders_run] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="agenda.daily_summary")
def agenda_daily_summary():
    """Résumé quotidien (19h) des tâches du jour non terminées."""
    db = SessionLocal()
    try:
        result = run_agenda_daily_summary(db)
        db.commit()
        logger.info(f"[agenda.daily_summary] {result}")
        return result
    except Exception as e:
        logger.exception(f"[agenda.daily_summary] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()
