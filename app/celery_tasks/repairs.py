# app/celery_tasks/repairs.py
from __future__ import annotations

from loguru import logger

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.repairs import run_repairs_auto_archive
from app.services.repairs_digest import run_repairs_daily_digest


@celery_app.task(name="repairs.daily_digest")
def repairs_daily_digest():
    """Digest des pièces à commander : notifications popup + emails."""
    db = SessionLocal()
    try:
        result = run_repairs_daily_digest(db)
        db.commit()
        logger.info(
            f"[repairs.daily_digest] pièces={result.get('parts_to_order')} "
            f"notifs={result.get('notifications_created', 0)} emails={result.get('emails_sent', 0)}"
        )
        return result
    except Exception as e:
        logger.exception(f"[repairs.daily_digest] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="repairs.auto_archive")
def repairs_auto_archive():
    db = SessionLocal()
    try:
        result = run_repairs_auto_archive(db)
        db.commit()
        logger.info(f"[repairs.auto_archive] archivés={result.get('archived')} / {result.get('total_delivered')}")
        return result
    except Exception as e:
        logger.exception(f"[repairs.auto_archive] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()
