from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///app.db")
AUTO_CREATE_SCHEMA = os.getenv("AUTO_CREATE_SCHEMA", "true").lower() == "true"
AUTO_RUN_MIGRATIONS = os.getenv("AUTO_RUN_MIGRATIONS", "false").lower() == "true"
AUTO_RUN_MIGRATIONS_LOCK = os.getenv(
    "AUTO_RUN_MIGRATIONS_LOCK", "/tmp/botdesk-migrations.lock"
)
DB_STARTUP_CHECK = os.getenv("DB_STARTUP_CHECK", "true").lower() == "true"

MTAPI_TOKEN = os.getenv("MTAPI_TOKEN")
MTAPI_MT4_URL = os.getenv("MTAPI_MT4_URL", "https://mt4full3.mtapi.io")
MTAPI_MT5_URL = os.getenv("MTAPI_MT5_URL", "https://mt5full3.mtapi.io")
MTAPI_TIMEOUT_SECONDS = float(os.getenv("MTAPI_TIMEOUT_SECONDS", "30"))

HISTORY_WINDOW_DAYS = int(os.getenv("HISTORY_WINDOW_DAYS", "30"))
ACCOUNT_STATUS_WORKERS = int(os.getenv("ACCOUNT_STATUS_WORKERS", "8"))

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ISSUER = os.getenv("JWT_ISSUER", "botdesk")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "botdesk-users")
JWT_ACCESS_TTL_MINUTES = int(os.getenv("JWT_ACCESS_TTL_MINUTES", "30"))

_cors_raw = os.getenv("CORS_ALLOWED_ORIGINS", "*")
if _cors_raw.strip() == "*":
    CORS_ALLOWED_ORIGINS = "*"
else:
    CORS_ALLOWED_ORIGINS = [item.strip() for item in _cors_raw.split(",") if item.strip()]

PLATFORM_MT4 = "MT4"
PLATFORM_MT5 = "MT5"
PLATFORMS = (PLATFORM_MT4, PLATFORM_MT5)
