# app/schemas/telegram.py
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class PersonalSetupIn(BaseModel):
    bot_username: Optional[str] = None
    bot_token: Optional[str] = None


class ModeIn(BaseModel):
    mode: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: Optional[int] = None
    message: Optional[Dict[str, Any]] = None
