# app/schemas/agenda.py
from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Any, List, Optional

from pydantic import BaseModel


class AgendaEventCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    event_date: Optional[date] = None
    event_time: Optional[time] = None
    source: Optional[str] = None
    status: Optional[str] = None
    # seul le booléen `true` rend l'événement important
    important: Optional[Any] = None
    project: Optional[str] = None
    custom_reminders: Optional[List[str]] = None


class AgendaEventUpdate(BaseModel):
    id: Optional[uuid.UUID] = None
    title: Optional[str] = None
    description: Optional[str] = None
    event_date: Optional[date] = None
    event_time: Optional[time] = None
    source: Optional[str] = None
    status: Optional[str] = None
    important: Optional[Any] = None
    project: Optional[str] = None
    custom_reminders: Optional[List[str]] = None


class AgendaEventOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    description: str
    event_date: date
    event_time: Optional[time] = None
    source: str
    status: str
    important: bool
    project: Optional[str] = None
    custom_reminders: List[str]
    archived: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReminderActionIn(BaseModel):
    event_id: Optional[uuid.UUID] = None
    action: Optional[str] = None
    reminder_id: Optional[uuid.UUID] = None
    notification_id: Optional[uuid.UUID] = None


class DailySummaryActionIn(BaseModel):
    event_ids: Optional[List[uuid.UUID]] = None
    action: Optional[str] = None
    notification_id: Optional[uuid.UUID] = None
