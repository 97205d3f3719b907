# tests/test_auth_errors.py
import uuid

from tests.conftest import API, auth_headers


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_missing_token_returns_401_envelope(client):
    resp = client.get(f"{API}/notifications-list")
    assert resp.status_code == 401
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"


def test_invalid_token_returns_401(client):
    resp = client.get(f"{API}/notifications-list", headers={"Authorization": "Bearer abc.def.ghi"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "UNAUTHORIZED"


def test_user_without_profile_is_forbidden(client):
    resp = client.get(f"{API}/consignments-list", headers=auth_headers(uuid.uuid4()))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"


def test_admin_route_refuses_shop_role(client, shop_user):
    _, headers = shop_user
    resp = client.get(f"{API}/consignments-list", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Accès réservé aux administrateurs"


def test_commande_role_cannot_move_consignments(client, make_user):
    _, headers = make_user("COMMANDE")
    resp = client.post(f"{API}/consignments-move", json={}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Accès non autorisé"


def test_validation_error_is_rendered_as_400(client, shop_user):
    _, headers = shop_user
    resp = client.post(f"{API}/notifications-mark-read", json={"notification_id": "pas-un-uuid"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "BAD_REQUEST"


def test_unknown_method_is_405(client, shop_user):
    _, headers = shop_user
    resp = client.delete(f"{API}/notifications-list", headers=headers)
    assert resp.status_code == 405
    assert resp.json()["error"]["code"] == "METHOD_NOT_ALLOWED"
