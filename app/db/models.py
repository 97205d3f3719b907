# app/db/models.py
from __future__ import annotations

import datetime as dt
import enum
import uuid
from datetime import datetime, date, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, Numeric, ForeignKey, Text, DateTime, Date, Time,
    UniqueConstraint, Boolean, func, Index, JSON, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from app.core.timeutils import utcnow
from app.db.base import Base

# JSONB sous Postgres, JSON générique ailleurs (tests SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


# =========================================================
#                     VOCABULAIRES
# =========================================================
class UserRole(str, enum.Enum):
    ADMIN_FULL = "ADMIN_FULL"
    ADMIN = "ADMIN"
    MAGASIN = "MAGASIN"
    COMMANDE = "COMMANDE"


class AgendaSource(str, enum.Enum):
    roadmap = "roadmap"
    rdv = "rdv"


class AgendaStatus(str, enum.Enum):
    a_faire = "a_faire"
    en_cours = "en_cours"
    fait = "fait"
    vu = "vu"


class ReminderType(str, enum.Enum):
    h24 = "24h"
    h2 = "2h"
    now = "now"
    retry_15m = "retry_15m"


class RepairStatus(str, enum.Enum):
    quote_todo = "quote_todo"
    parts_to_order = "parts_to_order"
    waiting_parts = "waiting_parts"
    to_repair = "to_repair"
    in_repair = "in_repair"
    drying = "drying"
    ready_to_return = "ready_to_return"
    awaiting_customer = "awaiting_customer"
    delivered = "delivered"
    archived = "archived"


class ConsignmentMoveType(str, enum.Enum):
    OUT = "OUT"
    RETURN = "RETURN"
    INVOICE = "INVOICE"
    PAYMENT = "PAYMENT"


# =========================================================
#                 PROFILS / CLIENTS
# =========================================================
class Profile(Base):
    __tablename__ = "profiles"

    # même id que l'utilisateur du fournisseur d'identité (claim sub)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(180), nullable=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(180), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.MAGASIN.value)
    created_at: Mapped[datetime] = _created_at()


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(180), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = _created_at()


# =========================================================
#                 PRODUITS / STOCKS
# =========================================================
class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # variantes : un produit enfant pointe vers son parent
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True
    )
    product_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    vat_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # normal | margin
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)  # 0.20 ou 20
    sale_price_ht: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    sale_price_ttc: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    pro_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)


class StockGroup(Base):
    __tablename__ = "stock_groups"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)


class Stock(Base):
    __tablename__ = "stocks"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("stock_groups.id", ondelete="SET NULL"), nullable=True
    )

    group: Mapped[Optional[StockGroup]] = relationship(lazy="selectin")


class ProductStock(Base):
    __tablename__ = "product_stocks"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    stock_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("stocks.id", ondelete="CASCADE"), primary_key=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# =========================================================
#                 AGENDA / RAPPELS
# =========================================================
class AgendaEvent(Base):
    __tablename__ = "agenda_events"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    event_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    source: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=AgendaStatus.a_faire.value)
    important: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    project: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    custom_reminders: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=lambda: ["24h", "2h", "now"]
    )
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_agenda_events_user_date", "user_id", "event_date"),
    )


class AgendaReminder(Base):
    __tablename__ = "agenda_reminders_queue"

    id: Mapped[uuid.UUID] = _uuid_pk()
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agenda_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    event: Mapped[AgendaEvent] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_agenda_reminders_due", "delivered", "run_at"),
    )


class AgendaReminderLog(Base):
    __tablename__ = "agenda_reminders_log"

    id: Mapped[uuid.UUID] = _uuid_pk()
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agenda_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reminder_type: Mapped[str] = mapped_column(String(16), nullable=False)
    notification_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    user_action: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# =========================================================
#                 NOTIFICATIONS
# =========================================================
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = _uuid_pk()
    # NULL = notification globale (visible par tous)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="info")
    link: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()


# =========================================================
#                 RÉPARATIONS
# =========================================================
class RepairTicket(Base):
    __tablename__ = "repair_tickets"

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True
    )

    device_brand: Mapped[str] = mapped_column(String(120), nullable=False)
    device_model: Mapped[str] = mapped_column(String(120), nullable=False)
    device_color: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    imei: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    pin_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    issue_description: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    power_state: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RepairStatus.quote_todo.value, index=True
    )
    assigned_tech: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cgv_accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    signature_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)

    # --- Séchage ---
    drying_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    drying_duration_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    drying_end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    drying_acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    customer: Mapped[Optional[Customer]] = relationship(lazy="selectin")


class RepairStatusHistory(Base):
    __tablename__ = "repair_status_history"

    id: Mapped[uuid.UUID] = _uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    old_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class RepairItem(Base):
    __tablename__ = "repair_items"

    id: Mapped[uuid.UUID] = _uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    # NULL = pièce à commander (pas encore en stock)
    stock_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("stocks.id", ondelete="SET NULL"), nullable=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    purchase_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    vat_regime: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    supplier_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    expected_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    product: Mapped[Optional[Product]] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("repair_id", "product_id", "stock_id", name="uq_repair_items_repair_product_stock"),
    )


class RepairMedia(Base):
    __tablename__ = "repair_media"

    id: Mapped[uuid.UUID] = _uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # signature | photo
    file_url: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = _created_at()


class RepairPublicLink(Base):
    __tablename__ = "repair_public_links"

    id: Mapped[uuid.UUID] = _uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = _created_at()


class RepairDailyLog(Base):
    __tablename__ = "repair_daily_logs"

    id: Mapped[uuid.UUID] = _uuid_pk()
    log_date: Mapped[date] = mapped_column(Date, nullable=False)
    parts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notifications_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class UserNotificationSettings(Base):
    __tablename__ = "user_notification_settings"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    daily_digest_hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active_days: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    enable_email: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    enable_popup: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)


class StockReservation(Base):
    """Alimentée par les procédures stockées de réservation / libération."""
    __tablename__ = "stock_reservations"

    id: Mapped[uuid.UUID] = _uuid_pk()
    repair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    stock_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = _created_at()


# =========================================================
#                 FACTURATION
# =========================================================
class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    items: Mapped[list["InvoiceItem"]] = relationship(back_populates="invoice", lazy="selectin")


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id: Mapped[uuid.UUID] = _uuid_pk()
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    stock_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("stocks.id"), nullable=True)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_ht: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)  # 0.20 ou 20
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    line_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="items")
    product: Mapped[Optional[Product]] = relationship(lazy="selectin")


# =========================================================
#                 DÉPÔT-VENTE (SOUS-TRAITANTS)
# =========================================================
class Consignment(Base):
    __tablename__ = "consignments"

    id: Mapped[uuid.UUID] = _uuid_pk()
    stock_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("stocks.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    product: Mapped[Optional[Product]] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("stock_id", "product_id", name="uq_consignments_stock_product"),
    )


class ConsignmentMove(Base):
    """Journal append-only des mouvements de dépôt."""
    __tablename__ = "consignment_moves"

    id: Mapped[uuid.UUID] = _uuid_pk()
    consignment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("consignments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stock_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    invoice_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_ht: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    vat_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)  # 0.20
    vat_regime: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # NORMAL | MARGE
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class ConsignmentStockCustomer(Base):
    __tablename__ = "consignment_stock_customer_map"

    stock_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("stocks.id"), primary_key=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("customers.id"), nullable=False)


# =========================================================
#                 FEUILLE DE ROUTE
# =========================================================
class RoadmapEntry(Base):
    __tablename__ = "roadmap_entries"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="todo")  # todo | vu | fait
    origin: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")  # manual | template
    template_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("roadmap_templates.id", ondelete="SET NULL"), nullable=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_roadmap_entries_user_date", "user_id", "date"),
    )


class RoadmapTemplate(Base):
    __tablename__ = "roadmap_templates"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = lundi ... 7 = dimanche
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    applies_from: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class RoadmapNotification(Base):
    __tablename__ = "roadmap_notifications"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # summary | reminder
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="in_app")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    # dénormalisé depuis payload.event_id pour la déduplication des rappels
    event_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    recurrence: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    reminders: Mapped[list["EventReminder"]] = relationship(
        lazy="selectin", cascade="all, delete-orphan"
    )


class EventReminder(Base):
    __tablename__ = "event_reminders"

    id: Mapped[uuid.UUID] = _uuid_pk()
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    days_before: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    at: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="in_app")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class UserSettingsRoadmap(Base):
    __tablename__ = "user_settings_roadmap"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    eod_hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    default_reminder_days: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    telegram_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    telegram_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="shared")
    updated_at: Mapped[datetime] = _updated_at()


class UserTelegramBot(Base):
    __tablename__ = "user_telegram_bots"

    id: Mapped[uuid.UUID] = _uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    bot_username: Mapped[str] = mapped_column(String(120), nullable=False)
    bot_token: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_secret: Mapped[str] = mapped_column(String(128), nullable=False)
    webhook_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    updated_at: Mapped[datetime] = _updated_at()


# =========================================================
#                 MARKETPLACES (OAuth)
# =========================================================
class MarketplaceAccount(Base):
    __tablename__ = "marketplace_accounts"

    id: Mapped[uuid.UUID] = _uuid_pk()
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    environment: Mapped[str] = mapped_column(String(16), nullable=False, default="production")
    external_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # refresh refusé par le fournisseur : nouveau consentement requis
    needs_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("provider", "environment", "external_id", name="uq_marketplace_accounts_ext"),
    )


class OAuthToken(Base):
    __tablename__ = "oauth_tokens"

    id: Mapped[uuid.UUID] = _uuid_pk()
    marketplace_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=True, index=True
    )
    # "pending" tant que le callback n'a pas abouti, "consumed" après usage unique
    access_token: Mapped[str] = mapped_column(Text(), nullable=False)
    refresh_token_enc: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    scope: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    state_nonce: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    environment: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[uuid.UUID] = _uuid_pk()
    marketplace: Mapped[str] = mapped_column(String(32), nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()
