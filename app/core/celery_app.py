# app/core/celery_app.py

from __future__ import annotations

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

# ------------------------------------------------------------------------------
# 1. Création de l'app Celery (broker & backend Redis)
# ------------------------------------------------------------------------------

celery_app = Celery(
    "atelier",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "app.celery_tasks.agenda",
        "app.celery_tasks.repairs",
        "app.celery_tasks.roadmap",
        "app.celery_tasks.consignments",
        "app.celery_tasks.emails",
    ],
)

# ------------------------------------------------------------------------------
# 2. Configuration générale
# ------------------------------------------------------------------------------

celery_app.conf.update(
    timezone="Europe/Paris",
    enable_utc=True,
    task_ignore_result=True,
    broker_connection_retry_on_startup=True,
    task_default_queue="default",
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
)

# ------------------------------------------------------------------------------
# 3. Planification Celery Beat (heure de Paris)
# ------------------------------------------------------------------------------

celery_app.conf.beat_schedule = {
    # File des rappels agenda
    "agenda_reminders_every_5min": {
        "task": "agenda.reminders_run",
        "schedule": crontab(minute="*/5"),
    },
    # Résumé des tâches non terminées
    "agenda_daily_summary": {
        "task": "agenda.daily_summary",
        "schedule": crontab(minute=0, hour="19"),  # tous les jours à 19:00
    },
    # Digest des pièces à commander
    "repairs_daily_digest": {
        "task": "repairs.daily_digest",
        "schedule": crontab(minute=0, hour="17"),  # tous les jours à 17:00
    },
    # Archivage des tickets livrés
    "repairs_auto_archive": {
        "task": "repairs.auto_archive",
        "schedule": crontab(minute=0, hour="2"),  # tous les jours à 02:00
    },
    # Bilans / rappels de la feuille de route
    "roadmap_notifications_hourly": {
        "task": "roadmap.process_notifications",
        "schedule": crontab(minute=0),
    },
    # Factures de dépôt impayées
    "consignments_check_unpaid": {
        "task": "consignments.check_unpaid",
        "schedule": crontab(minute=0, hour="8"),  # tous les jours à 08:00
    },
    # Synchronisation factures -> mouvements de dépôt
    "consignments_sync_invoices": {
        "task": "consignments.sync_invoices",
        "schedule": crontab(minute=0, hour="*/2"),
    },
}
