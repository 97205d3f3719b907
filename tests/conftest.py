# tests/conftest.py
import os
import tempfile
import uuid
from pathlib import Path

# configuration posée avant tout import de l'app (settings lus à l'import)
_TMP = Path(tempfile.mkdtemp(prefix="atelier-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP / 'test.db'}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["SECRET_KEY"] = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["MEDIA_ROOT"] = str(_TMP / "media")
os.environ["PUBLIC_BASE_URL"] = "https://atelier.test"
os.environ["FRONTEND_ORIGIN"] = "https://front.test"
os.environ["TELEGRAM_BOT_TOKEN"] = "123:shared-token"
os.environ["TELEGRAM_BOT_USERNAME"] = "atelier_bot"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = "shared-secret"
os.environ["REFUNDS_WEBHOOK_SECRET"] = "refund-secret"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app.core.config import settings
from app.core.security import create_jwt
from app.db import models
from app.db.base import Base
from app.db.rpc import RpcError, get_rpc
from app.db.session import SessionLocal, get_async_session, sync_engine
from app.main import app

API = settings.API_PREFIX

# une connexion par session : chaque TestClient tourne dans sa propre boucle
test_engine = create_async_engine(os.environ["DATABASE_URL"], poolclass=NullPool)
TestingAsyncSession = sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


async def override_get_async_session():
    async with TestingAsyncSession() as session:
        yield session


class FakeRpc:
    """Remplace les procédures stockées : enregistre les appels, renvoie des réponses préparées."""

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.errors = {}

    async def call(self, name, **params):
        self.calls.append((name, params))
        if name in self.errors:
            raise RpcError(name, self.errors[name])
        return self.responses.get(name)

    def names(self):
        return [name for name, _ in self.calls]


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    yield


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def client(rpc):
    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_rpc] = lambda: rpc
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def auth_headers(user_id) -> dict:
    return {"Authorization": f"Bearer {create_jwt(str(user_id))}"}


@pytest.fixture
def make_user(db):
    """Crée un profil avec le rôle demandé ; retourne (id, headers)."""

    def _make(role="MAGASIN", email=None):
        user_id = uuid.uuid4()
        db.add(models.Profile(id=user_id, role=role, email=email or f"{role.lower()}-{user_id.hex[:6]}@test.fr"))
        db.commit()
        return user_id, auth_headers(user_id)

    return _make


@pytest.fixture
def shop_user(make_user):
    return make_user("MAGASIN")


@pytest.fixture
def admin_user(make_user):
    return make_user("ADMIN")
