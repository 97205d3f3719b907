# app/schemas/repairs.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


# ---------- Sorties ----------
class CustomerOut(BaseModel):
    id: uuid.UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        from_attributes = True


class RepairTicketOut(BaseModel):
    id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    device_brand: str
    device_model: str
    device_color: Optional[str] = None
    imei: Optional[str] = None
    serial_number: Optional[str] = None
    issue_description: str
    power_state: Optional[str] = None
    status: str
    assigned_tech: Optional[uuid.UUID] = None
    invoice_id: Optional[uuid.UUID] = None
    cgv_accepted_at: Optional[datetime] = None
    signature_url: Optional[str] = None
    drying_start_at: Optional[datetime] = None
    drying_duration_min: Optional[int] = None
    drying_end_at: Optional[datetime] = None
    drying_acknowledged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RepairStatusHistoryOut(BaseModel):
    id: uuid.UUID
    repair_id: uuid.UUID
    old_status: Optional[str] = None
    new_status: str
    changed_by: Optional[uuid.UUID] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RepairItemOut(BaseModel):
    id: uuid.UUID
    repair_id: uuid.UUID
    product_id: uuid.UUID
    stock_id: Optional[uuid.UUID] = None
    quantity: int
    reserved: bool
    purchase_price: Optional[Decimal] = None
    vat_regime: Optional[str] = None
    supplier_name: Optional[str] = None
    expected_date: Optional[date] = None

    class Config:
        from_attributes = True


# ---------- Entrées ----------
class CreateIntakeIn(BaseModel):
    customer_id: Optional[uuid.UUID] = None
    device_brand: Optional[str] = None
    device_model: Optional[str] = None
    device_color: Optional[str] = None
    imei: Optional[str] = None
    serial_number: Optional[str] = None
    pin_code: Optional[str] = None
    issue_description: Optional[str] = None
    power_state: Optional[str] = None
    assigned_tech: Optional[uuid.UUID] = None
    cgv_accepted: Optional[bool] = None
    signature_base64: Optional[str] = None
    photos_base64: Optional[List[str]] = None


class StatusUpdateIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    note: Optional[str] = None


class AttachPartIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None
    product_id: Optional[uuid.UUID] = None
    stock_id: Optional[uuid.UUID] = None
    quantity: Optional[int] = None
    purchase_price: Optional[Decimal] = None
    vat_regime: Optional[str] = None


class MarkToOrderIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None
    product_id: Optional[uuid.UUID] = None
    quantity: Optional[int] = None
    supplier_name: Optional[str] = None
    purchase_price: Optional[Decimal] = None
    vat_regime: Optional[str] = None


class OrderBatchItemIn(BaseModel):
    repair_id: Optional[str] = None
    product_id: Optional[str] = None
    supplier_name: Optional[str] = None
    expected_date: Optional[str] = None
    purchase_price: Optional[Decimal] = None
    quantity: Optional[int] = None
    vat_regime: Optional[str] = None


class OrderBatchIn(BaseModel):
    items: Optional[List[OrderBatchItemIn]] = None


class DryingStartIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None
    duration_min: Optional[int] = None


class RepairIdIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None


class PublicLinkCreateIn(BaseModel):
    repair_id: Optional[uuid.UUID] = None
    ttl_days: Optional[int] = None
