# Ré-exports des schémas d'entrée partagés par les routers

from .agenda import AgendaEventCreate, AgendaEventOut, AgendaEventUpdate
from .billing import FinalizeInvoiceIn, InvoiceItemOut, InvoiceOut
from .consignments import ConsignmentMoveIn, ConsignmentMoveOut
from .notifications import MarkReadIn, NotificationOut
from .repairs import CreateIntakeIn, RepairTicketOut, StatusUpdateIn
from .roadmap import EventIn, TemplateIn, WeekSaveIn
from .telegram import ModeIn, PersonalSetupIn, TelegramUpdate

__all__ = [
    # agenda
    "AgendaEventCreate", "AgendaEventUpdate", "AgendaEventOut",
    # facturation / dépôt-vente
    "FinalizeInvoiceIn", "InvoiceOut", "InvoiceItemOut", "ConsignmentMoveIn", "ConsignmentMoveOut",
    # notifications
    "NotificationOut", "MarkReadIn",
    # réparations
    "CreateIntakeIn", "StatusUpdateIn", "RepairTicketOut",
    # feuille de route
    "WeekSaveIn", "TemplateIn", "EventIn",
    # telegram
    "PersonalSetupIn", "ModeIn", "TelegramUpdate",
]
