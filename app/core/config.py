from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AnyHttpUrl, field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    # Les chemins historiques des fonctions sont conservés côté front
    API_PREFIX: str = "/.netlify/functions"

    # Secret HS256 du fournisseur d'identité (tokens Bearer)
    JWT_SECRET: str = "change_me"
    CORS_ORIGINS: List[AnyHttpUrl] | List[str] = []
    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def split_cors_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"
    # exécution synchrone des tâches (tests / dev sans worker)
    CELERY_TASK_ALWAYS_EAGER: bool = False

    PUBLIC_BASE_URL: str = ""
    FRONTEND_ORIGIN: str = ""
    MEDIA_ROOT: str = "media"

    # Telegram (bot partagé)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_BOT_USERNAME: str = ""
    TELEGRAM_WEBHOOK_SECRET: str = ""

    # eBay OAuth
    EBAY_APP_ID: str = ""
    EBAY_CERT_ID: str = ""
    EBAY_RUNAME_PROD: str = ""
    EBAY_RUNAME_SANDBOX: str = ""

    # Clé AES-256 (base64) pour chiffrer les refresh tokens
    SECRET_KEY: str = ""

    # Webhook remboursements Amazon
    REFUNDS_WEBHOOK_SECRET: str = ""
    REFUNDS_SYSTEM_USER_ID: str = ""

    # SMTP
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    SMTP_FROM: str = "no-reply@atelier.local"

    # Coordonnées affichées dans les emails clients
    COMPANY_NAME: str = "Atelier"
    COMPANY_PHONE: str = ""
    COMPANY_EMAIL: str = ""
    COMPANY_ADDRESS: str = ""
    COMPANY_OPENING_HOURS: str = ""

settings = Settings()
