# app/routers/telegram.py
from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ApiError
from app.core.security import get_current_user_id
from app.db.models import UserSettingsRoadmap, UserTelegramBot
from app.db.session import get_async_session
from app.schemas.telegram import ModeIn, PersonalSetupIn, TelegramUpdate
from app.services.telegram import (
    BOT_TOKEN_RE,
    delete_webhook_async,
    personal_webhook_url,
    send_message_async,
    set_webhook_async,
    shared_bot_url,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["telegram"],
)

TEST_MESSAGE_SHARED = (
    "🧪 <b>Message de test</b>\n\nVotre connexion Telegram fonctionne correctement ! "
    "Vous recevrez vos notifications de Feuille de route ici."
)
TEST_MESSAGE_PERSONAL = (
    "🧪 <b>Message de test</b>\n\nVotre bot personnel fonctionne correctement ! "
    "Vous recevrez vos notifications de Feuille de route ici."
)
HELP_SHARED = (
    "Commandes disponibles:\n/start &lt;user_id&gt; - Connecter votre compte\n"
    "/stop - Désactiver les notifications"
)
HELP_PERSONAL = (
    "Commandes disponibles:\n/start - Activer les notifications\n/stop - Désactiver les notifications"
)
NOT_CONNECTED_PERSONAL = "Vous devez d'abord connecter votre bot avec /start"
NOT_ACTIVE_PERSONAL = "Votre bot n'est pas actif. Utilisez /start dans Telegram."
SEND_FAILED = "Échec de l'envoi du message de test"
SEND_OK = "Message de test envoyé avec succès !"


def _bot_handle(username: str) -> str:
    return (username or "").strip().lstrip("@")


async def _get_settings(session: AsyncSession, user_id) -> Optional[UserSettingsRoadmap]:
    return await session.get(UserSettingsRoadmap, user_id)


async def _get_bot(session: AsyncSession, user_id) -> Optional[UserTelegramBot]:
    return (
        await session.execute(select(UserTelegramBot).where(UserTelegramBot.user_id == user_id))
    ).scalar_one_or_none()


async def _upsert_settings(session: AsyncSession, user_id, **values) -> UserSettingsRoadmap:
    row = await _get_settings(session, user_id)
    if row is None:
        row = UserSettingsRoadmap(user_id=user_id)
        session.add(row)
    for k, v in values.items():
        setattr(row, k, v)
    return row


def _test_result(success: bool, message: str, chat_id: Optional[str] = None) -> dict:
    out = {"ok": True, "success": success, "message": message}
    if chat_id:
        out["chat_id"] = chat_id
    return out


async def _test_personal_bot(bot: UserTelegramBot) -> dict:
    if not bot.chat_id:
        return _test_result(False, NOT_CONNECTED_PERSONAL)
    if bot.status != "active":
        return _test_result(False, NOT_ACTIVE_PERSONAL)
    if not await send_message_async(bot.bot_token, bot.chat_id, TEST_MESSAGE_PERSONAL):
        return _test_result(False, SEND_FAILED)
    return _test_result(True, SEND_OK, bot.chat_id)


# =========================================================
#   INFOS DE CONNEXION
# =========================================================
@router.get("/telegram-info")
async def telegram_info(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    user_settings = await _get_settings(session, user_id)
    bot = await _get_bot(session, user_id)

    mode = (user_settings.telegram_mode if user_settings else None) or "shared"
    if mode == "personal":
        chat_id = bot.chat_id if bot else None
        is_connected = bool(bot and bot.status == "active" and bot.chat_id)
    else:
        chat_id = user_settings.telegram_chat_id if user_settings else None
        is_connected = bool(user_settings and user_settings.telegram_chat_id and user_settings.telegram_enabled)

    return {
        "ok": True,
        "shared_bot_url": shared_bot_url(user_id) or "",
        "personal_bot_url": f"https://t.me/{_bot_handle(bot.bot_username)}" if bot else None,
        "is_connected": is_connected,
        "mode": mode,
        "chat_id": chat_id,
        "personal_bot_status": bot.status if bot else None,
        "personal_bot": {
            "id": str(bot.id),
            "bot_username": bot.bot_username,
            "webhook_url": bot.webhook_url,
            "chat_id": bot.chat_id,
            "status": bot.status,
        } if bot else None,
    }


# =========================================================
#   BOT PERSONNEL
# =========================================================
@router.post("/telegram-personal-setup")
async def personal_setup(
    payload: PersonalSetupIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    bot_username = (payload.bot_username or "").strip()
    bot_token = (payload.bot_token or "").strip()
    if not bot_username or not bot_token:
        raise ApiError(400, "BAD_REQUEST", "bot_username et bot_token sont obligatoires")
    if not BOT_TOKEN_RE.match(bot_token):
        raise ApiError(400, "BAD_REQUEST", "Format de token de bot invalide")

    secret = secrets.token_hex(32)
    webhook_url = personal_webhook_url(user_id, secret)
    if not await set_webhook_async(bot_token, webhook_url, secret, ["message"]):
        raise ApiError(
            400, "WEBHOOK_FAILED",
            "Impossible de configurer le webhook du bot. Vérifiez le token.",
        )

    bot = await _get_bot(session, user_id)
    if bot is None:
        bot = UserTelegramBot(user_id=user_id)
        session.add(bot)
    bot.bot_username = bot_username
    bot.bot_token = bot_token
    bot.webhook_secret = secret
    bot.webhook_url = webhook_url
    bot.status = "pending"
    await session.commit()
    await session.refresh(bot)

    logger.info("Telegram : bot personnel @%s configuré pour %s", _bot_handle(bot_username), user_id)
    return {
        "ok": True,
        "success": True,
        "data": {
            "id": str(bot.id),
            "bot_username": bot.bot_username,
            "webhook_url": bot.webhook_url,
            "status": bot.status,
            "connect_url": f"https://t.me/{_bot_handle(bot_username)}",
        },
    }


@router.post("/telegram-personal-revoke")
async def personal_revoke(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    bot = await _get_bot(session, user_id)
    if bot is None:
        raise ApiError(404, "NOT_FOUND", "Aucun bot personnel configuré")

    # l'échec côté Telegram n'empêche pas la révocation locale
    if not await delete_webhook_async(bot.bot_token):
        logger.warning("Telegram : deleteWebhook KO pour %s, révocation poursuivie", user_id)

    bot.status = "revoked"
    user_settings = await _get_settings(session, user_id)
    if user_settings:
        user_settings.telegram_mode = "shared"
    await session.commit()
    return {"ok": True, "success": True, "message": "Bot personnel révoqué avec succès"}


@router.post("/telegram-personal-test")
async def personal_test(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    bot = await _get_bot(session, user_id)
    if bot is None:
        raise ApiError(404, "NOT_FOUND", "Aucun bot personnel configuré")
    return await _test_personal_bot(bot)


# =========================================================
#   MODE & TEST
# =========================================================
@router.post("/telegram-mode")
async def set_mode(
    payload: ModeIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    if payload.mode not in ("shared", "personal"):
        raise ApiError(400, "BAD_REQUEST", 'Mode invalide : "shared" ou "personal" attendu')

    if payload.mode == "personal":
        bot = await _get_bot(session, user_id)
        if bot is None:
            raise ApiError(400, "NO_PERSONAL_BOT", "Vous devez d'abord configurer un bot personnel")
        if bot.status != "active":
            raise ApiError(400, "PERSONAL_BOT_INACTIVE", "Votre bot personnel n'est pas actif. Utilisez /start dans Telegram.")

    await _upsert_settings(session, user_id, telegram_mode=payload.mode)
    await session.commit()
    label = "bot partagé" if payload.mode == "shared" else "bot personnel"
    return {"ok": True, "success": True, "message": f"Mode Telegram basculé vers: {label}"}


@router.post("/telegram-test")
async def telegram_test(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_async_session),
):
    user_settings = await _get_settings(session, user_id)
    if user_settings is None:
        return _test_result(False, "Aucune configuration trouvée")

    if (user_settings.telegram_mode or "shared") == "personal":
        bot = await _get_bot(session, user_id)
        if bot is None:
            return _test_result(False, "Aucun bot personnel configuré")
        return await _test_personal_bot(bot)

    if not user_settings.telegram_chat_id:
        return _test_result(False, "Vous devez d'abord connecter Telegram avec le bot partagé")
    if not user_settings.telegram_enabled:
        return _test_result(False, "Les notifications Telegram sont désactivées")
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("Telegram : TELEGRAM_BOT_TOKEN manquant")
        raise ApiError(500, "CONFIG_MISSING", "Configuration du bot partagé manquante")

    if not await send_message_async(settings.TELEGRAM_BOT_TOKEN, user_settings.telegram_chat_id, TEST_MESSAGE_SHARED):
        return _test_result(False, SEND_FAILED)
    return _test_result(True, SEND_OK, user_settings.telegram_chat_id)


# =========================================================
#   WEBHOOKS (appelés par Telegram)
# =========================================================
def _message_of(tg_update: TelegramUpdate):
    """(chat_id, texte) du message reçu, ou None si rien à traiter."""
    message = tg_update.message or {}
    text = message.get("text")
    chat_id = (message.get("chat") or {}).get("id")
    if not text or chat_id is None:
        return None
    return str(chat_id), text.strip()


@router.post("/telegram-personal-webhook")
async def personal_webhook(
    tg_update: TelegramUpdate,
    user_id: Optional[uuid.UUID] = Query(None),
    secret: Optional[str] = Query(None),
    x_telegram_bot_api_secret_token: str = Header(default=""),
    session: AsyncSession = Depends(get_async_session),
):
    if not user_id or not secret:
        raise ApiError(400, "BAD_REQUEST", "Paramètres manquants")

    bot = await _get_bot(session, user_id)
    if bot is None or not hmac.compare_digest(x_telegram_bot_api_secret_token, bot.webhook_secret):
        raise ApiError(403, "FORBIDDEN", "Accès refusé")

    received = _message_of(tg_update)
    if received is None:
        return {"ok": True}
    chat_id, text = received

    if text == "/start":
        bot.chat_id = chat_id
        bot.status = "active"
        await session.commit()
        logger.info("Telegram : bot personnel de %s activé (chat %s)", user_id, chat_id)
        await send_message_async(
            bot.bot_token, chat_id,
            "Votre bot personnel est maintenant connecté ! "
            "Vous recevrez vos notifications de Feuille de route ici.",
        )
    elif text == "/stop":
        await session.execute(
            update(UserSettingsRoadmap)
            .where(UserSettingsRoadmap.user_id == user_id)
            .values(telegram_mode="shared")
        )
        await session.commit()
        await send_message_async(
            bot.bot_token, chat_id,
            "Notifications désactivées sur ce bot. Utilisez /start pour réactiver.",
        )
    else:
        await send_message_async(bot.bot_token, chat_id, HELP_PERSONAL)
    return {"ok": True}


@router.post("/telegram-shared-webhook")
async def shared_webhook(
    tg_update: TelegramUpdate,
    x_telegram_bot_api_secret_token: str = Header(default=""),
    session: AsyncSession = Depends(get_async_session),
):
    expected = settings.TELEGRAM_WEBHOOK_SECRET
    if not expected or not hmac.compare_digest(x_telegram_bot_api_secret_token, expected):
        raise ApiError(403, "FORBIDDEN", "Accès refusé")

    received = _message_of(tg_update)
    if received is None:
        return {"ok": True}
    chat_id, text = received
    token = settings.TELEGRAM_BOT_TOKEN

    if text.startswith("/start "):
        try:
            target = uuid.UUID(text[len("/start "):].strip())
        except ValueError:
            await send_message_async(token, chat_id, HELP_SHARED)
            return {"ok": True}
        await _upsert_settings(session, target, telegram_chat_id=chat_id, telegram_enabled=True)
        await session.commit()
        logger.info("Telegram : chat %s lié à l'utilisateur %s", chat_id, target)
        await send_message_async(
            token, chat_id,
            "Connexion réussie ! Vous recevrez maintenant vos notifications de Feuille de route.",
        )
    elif text == "/stop":
        await session.execute(
            update(UserSettingsRoadmap)
            .where(UserSettingsRoadmap.telegram_chat_id == chat_id)
            .values(telegram_enabled=False)
        )
        await session.commit()
        await send_message_async(
            token, chat_id,
            "Notifications Telegram désactivées. Utilisez /start pour réactiver.",
        )
    else:
        await send_message_async(token, chat_id, HELP_SHARED)
    return {"ok": True}
