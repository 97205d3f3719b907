# tests/test_telegram.py
import pytest

from app.db.models import UserSettingsRoadmap, UserTelegramBot
from app.routers import telegram as telegram_router
from app.services.telegram import format_notification, shared_bot_url
from tests.conftest import API

SHARED_SECRET_HEADER = {"X-Telegram-Bot-Api-Secret-Token": "shared-secret"}


@pytest.fixture
def sent(monkeypatch):
    """Capture les messages au lieu d'appeler l'API Telegram."""
    messages = []

    async def fake_send(token, chat_id, text):
        messages.append((token, str(chat_id), text))
        return True

    monkeypatch.setattr(telegram_router, "send_message_async", fake_send)
    return messages


def _update(chat_id, text):
    return {"update_id": 1, "message": {"chat": {"id": chat_id}, "text": text}}


def _bot(db, user_id, **kw):
    values = dict(
        user_id=user_id,
        bot_username="@mon_atelier_bot",
        bot_token="999:perso",
        webhook_secret="bot-secret",
        webhook_url="https://atelier.test/hook",
        status="pending",
    )
    values.update(kw)
    bot = UserTelegramBot(**values)
    db.add(bot)
    db.commit()
    return bot


def test_helpers():
    assert format_notification("Titre", "Corps") == "<b>Titre</b>\n\nCorps"
    assert shared_bot_url("abc") == "https://t.me/atelier_bot?start=abc"


def test_info_without_configuration(client, shop_user):
    user_id, headers = shop_user
    body = client.get(f"{API}/telegram-info", headers=headers).json()
    assert body["shared_bot_url"] == f"https://t.me/atelier_bot?start={user_id}"
    assert body["mode"] == "shared"
    assert body["is_connected"] is False
    assert body["personal_bot"] is None


def test_shared_webhook_links_chat(client, db, sent, shop_user):
    user_id, _ = shop_user
    resp = client.post(
        f"{API}/telegram-shared-webhook", json=_update(4242, f"/start {user_id}"), headers=SHARED_SECRET_HEADER
    )
    assert resp.json() == {"ok": True}
    row = db.get(UserSettingsRoadmap, user_id)
    assert (row.telegram_chat_id, row.telegram_enabled) == ("4242", True)
    assert sent[0][:2] == ("123:shared-token", "4242")

    client.post(f"{API}/telegram-shared-webhook", json=_update(4242, "/stop"), headers=SHARED_SECRET_HEADER)
    db.expire_all()
    assert db.get(UserSettingsRoadmap, user_id).telegram_enabled is False


def test_shared_webhook_invalid_start_sends_help(client, sent):
    resp = client.post(
        f"{API}/telegram-shared-webhook", json=_update(1, "/start pas-un-uuid"), headers=SHARED_SECRET_HEADER
    )
    assert resp.json() == {"ok": True}
    assert sent == [("123:shared-token", "1", telegram_router.HELP_SHARED)]


def test_shared_webhook_rejects_bad_secret(client, sent):
    resp = client.post(
        f"{API}/telegram-shared-webhook",
        json=_update(1, "/stop"),
        headers={"X-Telegram-Bot-Api-Secret-Token": "autre"},
    )
    assert resp.status_code == 403
    assert sent == []


def test_personal_setup(client, db, monkeypatch, shop_user):
    user_id, headers = shop_user
    calls = []

    async def fake_set_webhook(token, url, secret, allowed_updates=None):
        calls.append((token, url, secret, allowed_updates))
        return True

    monkeypatch.setattr(telegram_router, "set_webhook_async", fake_set_webhook)

    resp = client.post(
        f"{API}/telegram-personal-setup",
        json={"bot_username": "@mon_atelier_bot", "bot_token": "999:perso"},
        headers=headers,
    )
    data = resp.json()["data"]
    assert data["status"] == "pending"
    assert data["connect_url"] == "https://t.me/mon_atelier_bot"

    token, url, secret, allowed = calls[0]
    assert token == "999:perso"
    assert allowed == ["message"]
    assert len(secret) == 64
    assert url == f"https://atelier.test{API}/telegram-personal-webhook?user_id={user_id}&secret={secret}"


def test_personal_setup_validation(client, monkeypatch, shop_user):
    _, headers = shop_user

    async def failing_webhook(*args, **kwargs):
        return False

    monkeypatch.setattr(telegram_router, "set_webhook_async", failing_webhook)

    resp = client.post(
        f"{API}/telegram-personal-setup", json={"bot_username": "x", "bot_token": "pas un token"}, headers=headers
    )
    assert resp.json()["error"]["message"] == "Format de token de bot invalide"

    resp = client.post(
        f"{API}/telegram-personal-setup", json={"bot_username": "x", "bot_token": "1:abc"}, headers=headers
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "WEBHOOK_FAILED"


def test_personal_webhook_start_activates_bot(client, db, sent, shop_user):
    user_id, _ = shop_user
    bot = _bot(db, user_id)

    resp = client.post(
        f"{API}/telegram-personal-webhook?user_id={user_id}&secret=bot-secret",
        json=_update(777, "/start"),
        headers={"X-Telegram-Bot-Api-Secret-Token": "bot-secret"},
    )
    assert resp.json() == {"ok": True}
    db.expire_all()
    bot = db.get(UserTelegramBot, bot.id)
    assert (bot.status, bot.chat_id) == ("active", "777")
    assert sent[0][0] == "999:perso"


def test_personal_webhook_rejects_wrong_secret(client, db, sent, shop_user):
    user_id, _ = shop_user
    _bot(db, user_id)

    resp = client.post(
        f"{API}/telegram-personal-webhook?user_id={user_id}&secret=bot-secret",
        json=_update(777, "/start"),
        headers={"X-Telegram-Bot-Api-Secret-Token": "faux"},
    )
    assert resp.status_code == 403
    resp = client.post(f"{API}/telegram-personal-webhook", json=_update(777, "/start"))
    assert resp.json()["error"]["message"] == "Paramètres manquants"


def test_mode_switch_requires_active_bot(client, db, shop_user):
    user_id, headers = shop_user
    resp = client.post(f"{API}/telegram-mode", json={"mode": "personal"}, headers=headers)
    assert resp.json()["error"]["code"] == "NO_PERSONAL_BOT"

    _bot(db, user_id, status="pending")
    resp = client.post(f"{API}/telegram-mode", json={"mode": "personal"}, headers=headers)
    assert resp.json()["error"]["code"] == "PERSONAL_BOT_INACTIVE"

    resp = client.post(f"{API}/telegram-mode", json={"mode": "autre"}, headers=headers)
    assert resp.status_code == 400


def test_mode_switch_to_personal(client, db, shop_user):
    user_id, headers = shop_user
    _bot(db, user_id, status="active", chat_id="777")

    resp = client.post(f"{API}/telegram-mode", json={"mode": "personal"}, headers=headers)
    assert resp.json()["message"] == "Mode Telegram basculé vers: bot personnel"
    info = client.get(f"{API}/telegram-info", headers=headers).json()
    assert info["mode"] == "personal"
    assert info["is_connected"] is True
    assert "bot_token" not in info["personal_bot"]


def test_test_message_outcomes(client, db, sent, shop_user):
    user_id, headers = shop_user
    resp = client.post(f"{API}/telegram-test", headers=headers).json()
    assert resp == {"ok": True, "success": False, "message": "Aucune configuration trouvée"}

    db.add(UserSettingsRoadmap(user_id=user_id, telegram_chat_id="55", telegram_enabled=False))
    db.commit()
    resp = client.post(f"{API}/telegram-test", headers=headers).json()
    assert resp["message"] == "Les notifications Telegram sont désactivées"

    row = db.get(UserSettingsRoadmap, user_id)
    row.telegram_enabled = True
    db.commit()
    resp = client.post(f"{API}/telegram-test", headers=headers).json()
    assert resp == {"ok": True, "success": True, "message": telegram_router.SEND_OK, "chat_id": "55"}
    assert sent == [("123:shared-token", "55", telegram_router.TEST_MESSAGE_SHARED)]


def test_revoke_falls_back_to_shared(client, db, monkeypatch, shop_user):
    user_id, headers = shop_user
    bot = _bot(db, user_id, status="active", chat_id="777")
    db.add(UserSettingsRoadmap(user_id=user_id, telegram_mode="personal"))
    db.commit()

    async def failing_delete(token):
        return False

    monkeypatch.setattr(telegram_router, "delete_webhook_async", failing_delete)

    resp = client.post(f"{API}/telegram-personal-revoke", headers=headers)
    assert resp.json()["message"] == "Bot personnel révoqué avec succès"
    db.expire_all()
    assert db.get(UserTelegramBot, bot.id).status == "revoked"
    assert db.get(UserSettingsRoadmap, user_id).telegram_mode == "shared"

    resp = client.post(f"{API}/telegram-personal-revoke", headers=headers)
    assert resp.status_code == 200


def test_revoke_without_bot_is_404(client, shop_user):
    _, headers = shop_user
    resp = client.post(f"{API}/telegram-personal-revoke", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "Aucun bot personnel configuré"


def test_personal_test_unknown_user_bot(client, shop_user):
    _, headers = shop_user
    assert client.post(f"{API}/telegram-personal-test", headers=headers).status_code == 404