# app/schemas/consignments.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class ConsignmentMoveIn(BaseModel):
    type: Optional[str] = None
    stock_id: Optional[uuid.UUID] = None
    product_id: Optional[uuid.UUID] = None
    qty: Optional[int] = None


class ConsignmentMoveOut(BaseModel):
    id: uuid.UUID
    consignment_id: uuid.UUID
    stock_id: uuid.UUID
    product_id: uuid.UUID
    type: str
    qty: int
    unit_price_ht: Optional[Decimal] = None
    vat_rate: Optional[Decimal] = None
    vat_regime: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncInvoicesIn(BaseModel):
    since: Optional[datetime] = None
