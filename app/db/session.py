# app/db/session.py

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker as sessionmaker_sync

from typing import Generator

from app.core.config import settings


# -------------------------------------------------------------------
# 🔵 ASYNC ENGINE (routers)
# -------------------------------------------------------------------

engine = create_async_engine(settings.DATABASE_URL, future=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def get_async_session():
    """
    Dépendance FastAPI pour les endpoints ASYNC.
    """
    async with AsyncSessionLocal() as session:
        yield session

# Alias utilisé par les dépendances d'auth
get_session = get_async_session


# -------------------------------------------------------------------
# 🔴 SYNC ENGINE (Celery & endpoints cron)
# -------------------------------------------------------------------

def sync_url(url: str) -> str:
    """postgresql+asyncpg:// -> postgresql:// (idem pour sqlite+aiosqlite)."""
    return url.replace("+asyncpg", "").replace("+aiosqlite", "")

SYNC_DATABASE_URL = sync_url(settings.DATABASE_URL)

sync_engine = create_engine(SYNC_DATABASE_URL, future=True, pool_pre_ping=True)
SessionLocal = sessionmaker_sync(bind=sync_engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator:
    """
    Dépendance FastAPI pour les endpoints SYNCHRONES.
    Utilisé par :
      - routers/cron.py (déclenchement manuel des tâches planifiées)
      - Celery (via SessionLocal dans les tasks)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
