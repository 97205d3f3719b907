# app/main.py

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.core.config import settings
from app.core.errors import register_error_handlers
from app.middleware.no_cache_middleware import NoCacheMiddleware

# API Routers
from app.routers import agenda_events, agenda_actions
from app.routers import notifications
from app.routers import repairs, repairs_public
from app.routers import consignments
from app.routers import billing
from app.routers import roadmap
from app.routers import telegram
from app.routers import ebay_oauth
from app.routers import cron


class NoCacheStaticFiles(StaticFiles):
    async def get_response(self, path, scope):
        response = await super().get_response(path, scope)
        # Désactive le cache navigateur + proxies
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
        return response


logging.basicConfig(
    level=logging.DEBUG if settings.ENV == "dev" else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Atelier API",
    openapi_url=f"{settings.API_PREFIX}/openapi.json"
)

register_error_handlers(app)

# ------------------------
# CORS
# ------------------------
origins = [str(o).rstrip("/") for o in (settings.CORS_ORIGINS or [])]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins if origins else ["*"],
    allow_credentials=bool(origins),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(NoCacheMiddleware)

# ------------------------
# Médias (photos / signatures des tickets)
# ------------------------
MEDIA_ROOT = Path(settings.MEDIA_ROOT)
MEDIA_ROOT.mkdir(parents=True, exist_ok=True)
app.mount("/media", NoCacheStaticFiles(directory=str(MEDIA_ROOT)), name="media")


# ------------------------
# Healthchecks
# ------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


# ------------------------
# API BACKEND (ROUTERS, déjà préfixés)
# ------------------------
app.include_router(agenda_events.router)
app.include_router(agenda_actions.router)
app.include_router(notifications.router)

app.include_router(repairs.router)
app.include_router(repairs_public.router)

app.include_router(consignments.router)
app.include_router(billing.router)

app.include_router(roadmap.router)
app.include_router(telegram.router)
app.include_router(ebay_oauth.router)

app.include_router(cron.router)
