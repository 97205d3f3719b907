# tests/test_ebay_oauth.py
from datetime import timedelta
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.crypto import decrypt_secret, encrypt_secret
from app.core.timeutils import utcnow
from app.db.models import MarketplaceAccount, OAuthToken, SyncLog
from app.services import ebay_oauth
from app.services.ebay_oauth import decode_state, encode_state
from tests.conftest import API


@pytest.fixture
def ebay_settings(monkeypatch):
    monkeypatch.setattr(settings, "EBAY_APP_ID", "app-id")
    monkeypatch.setattr(settings, "EBAY_CERT_ID", "cert-id")
    monkeypatch.setattr(settings, "EBAY_RUNAME_SANDBOX", "runame-sandbox")
    monkeypatch.setattr(settings, "EBAY_RUNAME_PROD", "runame-prod")


@pytest.fixture
def fake_exchange(monkeypatch):
    codes = []

    async def _exchange(environment, code):
        codes.append((environment, code))
        return {"access_token": "acc-1", "refresh_token": "ref-1", "expires_in": 7200,
                "scope": ["s1", "s2"]}

    monkeypatch.setattr(ebay_oauth, "exchange_code", _exchange)
    return codes


def _authorize(client, headers, environment="sandbox"):
    resp = client.get(
        f"{API}/ebay-authorize?environment={environment}", headers=headers, follow_redirects=False
    )
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    return location, parse_qs(location.query)


def test_state_roundtrip():
    state = encode_state("abc", "sandbox", None)
    assert "=" not in state
    assert decode_state(state) == {"n": "abc", "environment": "sandbox", "account_id": None}
    assert decode_state("%%%") == {}


def test_authorize_redirects_with_pending_row(client, db, ebay_settings, admin_user):
    _, headers = admin_user
    location, params = _authorize(client, headers)

    assert f"{location.scheme}://{location.netloc}{location.path}" == ebay_oauth.AUTH_URLS["sandbox"]
    assert params["client_id"] == ["app-id"]
    assert params["redirect_uri"] == ["runame-sandbox"]
    assert params["prompt"] == ["consent"]

    state = decode_state(params["state"][0])
    pending = db.execute(select(OAuthToken)).scalar_one()
    assert pending.access_token == "pending"
    assert pending.state_nonce == state["n"]
    assert pending.environment == "sandbox"


def test_callback_stores_encrypted_token(client, db, ebay_settings, fake_exchange, admin_user):
    _, headers = admin_user
    _, params = _authorize(client, headers)

    resp = client.get(
        f"{API}/ebay-callback",
        params={"code": "code-xyz", "state": params["state"][0]},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://front.test/pricing?provider=ebay&connected=1"
    assert "gf_ebay=connected" in resp.headers["set-cookie"]
    assert fake_exchange == [("sandbox", "code-xyz")]

    account = db.execute(select(MarketplaceAccount)).scalar_one()
    assert (account.label, account.provider, account.external_id) == ("eBay Sandbox", "ebay", "app-id")

    token = db.execute(select(OAuthToken)).scalar_one()
    assert token.access_token == "acc-1"
    assert token.marketplace_account_id == account.id
    assert token.scope == "s1 s2"
    assert token.refresh_token_enc != "ref-1"
    assert decrypt_secret(token.refresh_token_enc) == "ref-1"


def test_callback_rejects_unknown_or_expired_state(client, db, ebay_settings, fake_exchange, admin_user):
    _, headers = admin_user
    resp = client.get(f"{API}/ebay-callback", params={"code": "c", "state": encode_state("inconnu", "sandbox")})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_STATE"

    _, params = _authorize(client, headers)
    pending = db.execute(select(OAuthToken)).scalar_one()
    pending.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    resp = client.get(f"{API}/ebay-callback", params={"code": "c", "state": params["state"][0]})
    assert resp.status_code == 400
    assert db.execute(select(OAuthToken)).first() is None
    assert fake_exchange == []


def test_callback_requires_code_and_state(client):
    resp = client.get(f"{API}/ebay-callback?state=abc")
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "code et state sont obligatoires"


def test_authorize_guards(client, ebay_settings, shop_user, admin_user):
    _, shop_headers = shop_user
    _, admin_headers = admin_user
    resp = client.get(f"{API}/ebay-authorize", headers=shop_headers, follow_redirects=False)
    assert resp.status_code == 403

    resp = client.get(f"{API}/ebay-authorize?environment=staging", headers=admin_headers, follow_redirects=False)
    assert resp.status_code == 400


def test_authorize_without_credentials(client, admin_user):
    _, headers = admin_user
    resp = client.get(f"{API}/ebay-authorize", headers=headers, follow_redirects=False)
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "CONFIG_MISSING"


@pytest.fixture
def ebay_http(monkeypatch):
    """Transport httpx du service remplacé : réponses préparées par URL, requêtes enregistrées."""
    routes = {}
    requests = []

    def _handler(request):
        requests.append(request)
        answers = routes.get(str(request.url))
        if not answers:
            raise httpx.ConnectError("hôte injoignable", request=request)
        status, payload = answers.pop(0) if len(answers) > 1 else answers[0]
        return httpx.Response(status, json=payload)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        ebay_oauth.httpx, "AsyncClient",
        lambda **kw: real_client(transport=httpx.MockTransport(_handler), **kw),
    )
    return SimpleNamespace(routes=routes, requests=requests)


IDENTITY = ebay_oauth.IDENTITY_URLS["sandbox"]
PRIVILEGE = ebay_oauth.PRIVILEGE_URLS["sandbox"]
TOKEN = ebay_oauth.TOKEN_URLS["sandbox"]


def _account(db, external_id="app-id", label="eBay Sandbox", **kw):
    acc = MarketplaceAccount(provider="ebay", environment="sandbox", external_id=external_id, label=label, **kw)
    db.add(acc)
    db.commit()
    return acc


def _token(db, account, expired=False, refresh_token="ref-1", access_token="acc-1"):
    delta = timedelta(minutes=-5) if expired else timedelta(hours=1)
    db.add(OAuthToken(
        marketplace_account_id=account.id,
        access_token=access_token,
        refresh_token_enc=encrypt_secret(refresh_token) if refresh_token else None,
        scope="s1 s2",
        environment="sandbox",
        expires_at=utcnow() + delta,
    ))
    db.commit()


def _seller_ok(ebay_http):
    ebay_http.routes[IDENTITY] = [(200, {"userId": "u-1", "username": "boutique", "registrationMarketplaceId": "EBAY_FR"})]
    ebay_http.routes[PRIVILEGE] = [(200, {"sellerRegistrationCompleted": True, "sellingLimit": {"quantity": 10}})]


def _test_connection(client, headers, account):
    return client.get(f"{API}/ebay-test-connection?account_id={account.id}", headers=headers)


def test_connection_ok(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account)
    _seller_ok(ebay_http)

    resp = _test_connection(client, headers, account)
    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "scopes": "s1 s2",
        "environment": "sandbox",
        "identity": {"userId": "u-1", "username": "boutique", "registrationMarketplaceId": "EBAY_FR"},
        "privileges": {"sellerRegistrationCompleted": True, "sellingLimit": {"quantity": 10}},
    }
    assert [r.headers["authorization"] for r in ebay_http.requests] == ["Bearer acc-1", "Bearer acc-1"]

    log = db.execute(select(SyncLog)).scalar_one()
    assert (log.marketplace, log.operation, log.status) == ("ebay", "oauth_test", "ok")


def test_connection_refreshes_expired_token(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account, expired=True)
    ebay_http.routes[TOKEN] = [(200, {"access_token": "acc-2", "expires_in": 7200, "refresh_token": "ref-2"})]
    _seller_ok(ebay_http)

    resp = _test_connection(client, headers, account)
    assert resp.json()["ok"] is True

    refresh = ebay_http.requests[0]
    form = parse_qs(refresh.content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["ref-1"]
    assert form["redirect_uri"] == ["runame-sandbox"]
    assert ebay_http.requests[1].headers["authorization"] == "Bearer acc-2"

    db.expire_all()
    token = db.execute(select(OAuthToken)).scalar_one()
    assert token.access_token == "acc-2"
    assert decrypt_secret(token.refresh_token_enc) == "ref-2"


def test_connection_retries_once_after_401(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account)
    _seller_ok(ebay_http)
    ebay_http.routes[IDENTITY].insert(0, (401, {}))
    ebay_http.routes[TOKEN] = [(200, {"access_token": "acc-2", "expires_in": 7200})]

    resp = _test_connection(client, headers, account)
    assert resp.json()["ok"] is True
    assert db.execute(select(SyncLog)).scalar_one().status == "retry"


def test_connection_refresh_refused(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account, expired=True)
    ebay_http.routes[TOKEN] = [(400, {"error": "invalid_grant"})]

    resp = _test_connection(client, headers, account)
    assert resp.status_code == 424
    assert resp.json()["error"]["code"] == "REFRESH_FAILED"
    db.expire_all()
    assert db.get(MarketplaceAccount, account.id).needs_reauth is True
    assert db.execute(select(SyncLog)).scalar_one().status == "fail"


def test_connection_token_missing_or_expired(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)

    resp = _test_connection(client, headers, account)
    assert resp.status_code == 424
    assert resp.json()["error"]["code"] == "TOKEN_MISSING"

    _token(db, account, expired=True, refresh_token=None)
    resp = _test_connection(client, headers, account)
    assert resp.status_code == 424
    assert resp.json()["error"]["code"] == "TOKEN_EXPIRED"
    assert ebay_http.requests == []


def test_connection_insufficient_permissions(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account)
    _seller_ok(ebay_http)
    ebay_http.routes[PRIVILEGE] = [(403, {"errors": []})]

    resp = _test_connection(client, headers, account)
    assert resp.status_code == 200
    assert resp.json() == {
        "ok": False,
        "reason": "insufficient_permissions_or_r0",
        "hint": ebay_oauth.REAUTH_HINT,
        "environment": "sandbox",
    }


def test_connection_ebay_unreachable(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    account = _account(db)
    _token(db, account)

    resp = _test_connection(client, headers, account)
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "EBAY_UNAVAILABLE"


def test_connection_guards(client, db, ebay_settings, shop_user, admin_user):
    _, shop_headers = shop_user
    _, headers = admin_user
    inactive = _account(db, is_active=False)

    assert client.get(f"{API}/ebay-test-connection", headers=headers).status_code == 400
    assert _test_connection(client, headers, inactive).status_code == 404
    assert _test_connection(client, shop_headers, inactive).status_code == 403


def test_callback_provider_unreachable(client, db, ebay_settings, ebay_http, admin_user):
    _, headers = admin_user
    _, params = _authorize(client, headers)

    resp = client.get(f"{API}/ebay-callback", params={"code": "c", "state": params["state"][0]})
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "PROVIDER_ERROR"
    assert str(ebay_http.requests[0].url) == TOKEN
    assert db.execute(select(MarketplaceAccount)).first() is None


def test_accounts_list_prefers_connected_duplicate(client, db, admin_user):
    _, headers = admin_user
    now = utcnow()
    older = _account(db, label="Ancien", created_at=now - timedelta(days=2))
    newer = MarketplaceAccount(provider="ebay", environment="production", external_id="app-id",
                               label="Récent", created_at=now - timedelta(days=1))
    other = _account(db, external_id="autre", label="Autre", created_at=now)
    _account(db, external_id="inactif", is_active=False)
    db.add(newer)
    db.commit()
    _token(db, older)

    resp = client.get(f"{API}/marketplaces-accounts?provider=ebay", headers=headers)
    assert resp.status_code == 200
    accounts = resp.json()["accounts"]
    assert [a["display_name"] for a in accounts] == ["Autre", "Ancien"]
    assert accounts[0] == {
        "id": str(other.id),
        "display_name": "Autre",
        "environment": "sandbox",
        "provider_account_id": "autre",
        "connected": False,
        "needs_reauth": False,
    }
    assert accounts[1]["connected"] is True

    log = db.execute(select(SyncLog)).scalar_one()
    assert (log.marketplace, log.operation, log.status) == ("ebay", "accounts_list", "ok")


def test_accounts_list_requires_provider(client, db, shop_user, admin_user):
    _, shop_headers = shop_user
    _, headers = admin_user
    assert client.get(f"{API}/marketplaces-accounts?provider=ebay", headers=shop_headers).status_code == 403

    resp = client.get(f"{API}/marketplaces-accounts", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "provider est obligatoire"
    assert db.execute(select(SyncLog)).scalar_one().status == "fail"
