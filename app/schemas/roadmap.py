# app/schemas/roadmap.py
from __future__ import annotations

import uuid
import datetime as dt
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class RoadmapEntryOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    date: dt.date
    title: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    status: str
    origin: str
    template_id: Optional[uuid.UUID] = None
    position: int

    class Config:
        from_attributes = True


class WeekEntryIn(BaseModel):
    # uuid réel, ou id virtuel "template-<template_id>-<date>"
    id: Optional[str] = None
    date: Optional[dt.date] = None
    title: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    status: Optional[str] = None
    position: Optional[int] = None
    template_id: Optional[uuid.UUID] = None


class WeekSaveIn(BaseModel):
    entries: Optional[List[WeekEntryIn]] = None


class TemplateIn(BaseModel):
    id: Optional[uuid.UUID] = None
    title: Optional[str] = None
    day_of_week: Optional[int] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    position: Optional[int] = None
    active: Optional[bool] = None
    propagate_future: Optional[bool] = False


class RoadmapTemplateOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    day_of_week: int
    title: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    position: int
    active: bool
    applies_from: dt.date

    class Config:
        from_attributes = True


class EventReminderIn(BaseModel):
    days_before: Optional[int] = 1
    at: Optional[time] = None
    channel: Optional[str] = None
    active: Optional[bool] = True


class EventIn(BaseModel):
    id: Optional[uuid.UUID] = None
    title: Optional[str] = None
    date: Optional[dt.date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    recurrence: Optional[str] = None
    reminders: Optional[List[EventReminderIn]] = None


class EventReminderOut(BaseModel):
    id: uuid.UUID
    days_before: int
    at: Optional[time] = None
    channel: str
    active: bool

    class Config:
        from_attributes = True


class EventOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    date: dt.date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    recurrence: Optional[str] = None
    reminders: List[EventReminderOut] = []

    class Config:
        from_attributes = True


class RoadmapNotificationOut(BaseModel):
    id: uuid.UUID
    type: str
    payload: Dict[str, Any]
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    channel: str
    status: str

    class Config:
        from_attributes = True


class NotificationActionIn(BaseModel):
    action: Optional[str] = None  # mark_seen | mark_done
    ids: Optional[List[uuid.UUID]] = None
