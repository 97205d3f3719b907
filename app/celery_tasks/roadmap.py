# app/celery_tasks/roadmap.py
from __future__ import annotations

from loguru import logger

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.roadmap_notifications import run_roadmap_notifications


@celery_app.task(name="roadmap.process_notifications")
def roadmap_process_notifications():
    """Bilans de fin de journée + rappels d'événements (toutes les heures)."""
    db = SessionLocal()
    try:
        result = run_roadmap_notifications(db)
        db.commit()
        logger.info(f"[roadmap.process_notifications] {result}")
        return result
    except Exception as e:
        logger.exception(f"[roadmap.process_notifications] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()
