# app/services/telegram.py
"""
Client Telegram Bot API.

- `send_message` (requests) : côté worker / jobs synchrones
- `*_async` (httpx) : côté routers FastAPI
Les messages sont envoyés en parse_mode=HTML.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import httpx
import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
BOT_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")
TIMEOUT = 15


def api_url(token: str, method: str) -> str:
    return f"{TELEGRAM_API}/bot{token}/{method}"


def format_notification(title: str, message: str) -> str:
    return f"<b>{title}</b>\n\n{message}"


def _chat_id(chat_id) -> Any:
    try:
        return int(chat_id)
    except (TypeError, ValueError):
        return chat_id


# ------------------------------------------------------------------
# Synchrone (Celery / jobs)
# ------------------------------------------------------------------
def send_message(token: str, chat_id, text: str) -> bool:
    if not token or not chat_id:
        return False
    try:
        resp = requests.post(
            api_url(token, "sendMessage"),
            json={"chat_id": _chat_id(chat_id), "text": text, "parse_mode": "HTML"},
            timeout=TIMEOUT,
        )
    except requests.RequestException:
        logger.exception("Telegram sendMessage : erreur réseau")
        return False
    if not resp.ok:
        logger.error("Telegram sendMessage KO (%s) : %s", resp.status_code, resp.text[:200])
        return False
    return True


# ------------------------------------------------------------------
# Asynchrone (routers)
# ------------------------------------------------------------------
async def _post(token: str, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=TIMEOUT) as client:
        resp = await client.post(api_url(token, method), json=payload)
    try:
        data = resp.json()
    except ValueError:
        data = {"ok": False, "description": resp.text[:200]}
    if resp.status_code >= 400 or not data.get("ok"):
        logger.warning("Telegram %s KO (%s) : %s", method, resp.status_code, data.get("description"))
    return data


async def send_message_async(token: str, chat_id, text: str) -> bool:
    if not token or not chat_id:
        return False
    try:
        data = await _post(token, "sendMessage", {
            "chat_id": _chat_id(chat_id), "text": text, "parse_mode": "HTML",
        })
    except httpx.HTTPError:
        logger.exception("Telegram sendMessage : erreur réseau")
        return False
    return bool(data.get("ok"))


async def set_webhook_async(token: str, url: str, secret_token: str,
                            allowed_updates: Optional[List[str]] = None) -> bool:
    try:
        data = await _post(token, "setWebhook", {
            "url": url,
            "secret_token": secret_token,
            "allowed_updates": allowed_updates or ["message"],
        })
    except httpx.HTTPError:
        logger.exception("Telegram setWebhook : erreur réseau")
        return False
    return bool(data.get("ok"))


async def delete_webhook_async(token: str) -> bool:
    try:
        data = await _post(token, "deleteWebhook", {})
    except httpx.HTTPError:
        logger.exception("Telegram deleteWebhook : erreur réseau")
        return False
    return bool(data.get("ok"))


def shared_bot_url(user_id) -> Optional[str]:
    if not settings.TELEGRAM_BOT_USERNAME:
        return None
    return f"https://t.me/{settings.TELEGRAM_BOT_USERNAME}?start={user_id}"


def personal_webhook_url(user_id, secret: str) -> str:
    return (
        f"{settings.PUBLIC_BASE_URL}{settings.API_PREFIX}"
        f"/telegram-personal-webhook?user_id={user_id}&secret={secret}"
    )
