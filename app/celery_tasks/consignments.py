# app/celery_tasks/consignments.py
from __future__ import annotations

from loguru import logger

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.consignments import run_check_unpaid, run_sync_invoices


@celery_app.task(name="consignments.check_unpaid")
def consignments_check_unpaid(days: int = 30):
    db = SessionLocal()
    try:
        result = run_check_unpaid(db, days=days)
        db.commit()
        logger.info(f"[consignments.check_unpaid] impayés={result.get('unpaid')} seuil={days}j")
        return result
    except Exception as e:
        logger.exception(f"[consignments.check_unpaid] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="consignments.sync_invoices")
def consignments_sync_invoices():
    """Factures -> mouvements INVOICE / PAYMENT sur les stocks sous-traitants."""
    db = SessionLocal()
    try:
        result = run_sync_invoices(db)
        db.commit()
        logger.info(
            f"[consignments.sync_invoices] lignes={result.get('processed')} "
            f"invoice={result.get('invoice_moves_created')} payment={result.get('payment_moves_created')}"
        )
        return result
    except Exception as e:
        logger.exception(f"[consignments.sync_invoices] Erreur : {e}")
        db.rollback()
        raise
    finally:
        db.close()
