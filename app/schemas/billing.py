# app/schemas/billing.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class FinalizeInvoiceIn(BaseModel):
    invoiceId: Optional[uuid.UUID] = None
    idempotencyKey: Optional[str] = None


class InvoiceItemOut(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    description: Optional[str] = None
    qty: int
    unit_price_ht: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    line_order: Optional[int] = None

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    status: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    items: List[InvoiceItemOut] = []

    class Config:
        from_attributes = True
