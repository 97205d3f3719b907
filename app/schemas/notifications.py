# app/schemas/notifications.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class NotificationOut(BaseModel):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    type: str
    title: str
    message: str
    severity: str
    link: Optional[str] = None
    read: bool
    # colonne `metadata` (attribut ORM `meta`)
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MarkReadIn(BaseModel):
    notification_id: Optional[uuid.UUID] = None
