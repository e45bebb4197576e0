from __future__ import annotations

import logging

from flask import Flask, request
from flask_cors import CORS
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from alembic import command
from alembic.config import Config

from .account_connection import AccountConnectionService
from .account_data import AccountDataService
from .credentials import CredentialStore
from .http_utils import json_error
from .models import engine
from .mtapi_client import MtapiClient
from .routes_api import api
from .settings import (
    AUTO_RUN_MIGRATIONS,
    AUTO_RUN_MIGRATIONS_LOCK,
    BASE_DIR,
    CORS_ALLOWED_ORIGINS,
    DATABASE_URL,
    DB_STARTUP_CHECK,
)


def create_app(
    client: MtapiClient | None = None, credentials: CredentialStore | None = None
) -> Flask:
    app = Flask(__name__)
    if not app.logger.handlers:
        logging.basicConfig(level=logging.INFO)
    CORS(app, resources={r"/api/*": {"origins": CORS_ALLOWED_ORIGINS}})

    client = client or MtapiClient()
    app.extensions["botdesk"] = {
        "connections": AccountConnectionService(client, credentials),
        "data": AccountDataService(client),
    }

    @app.errorhandler(Exception)
    def handle_error(error: Exception):
        if isinstance(error, HTTPException):
            return json_error(error.description or "Request failed.", error.code or 500)
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return json_error("Something went wrong. Please try again.", 500)

    app.register_blueprint(api)
    _run_migrations(app)
    _log_db_startup(app)

    return app


def _run_migrations(app: Flask) -> None:
    if not AUTO_RUN_MIGRATIONS:
        return
    lock_path = AUTO_RUN_MIGRATIONS_LOCK
    lock_handle = None
    try:
        lock_handle = open(lock_path, "w", encoding="utf-8")
        try:
            import fcntl  # type: ignore

            fcntl.flock(lock_handle, fcntl.LOCK_EX)
        except ImportError:
            pass
        alembic_cfg = Config(str(BASE_DIR / "alembic.ini"))
        alembic_cfg.set_main_option("script_location", str(BASE_DIR / "migrations"))
        alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        app.logger.info("Database migrations applied.")
    except Exception as exc:  # pragma: no cover - startup guard
        app.logger.error("Database migration failed: %s", exc)
        raise
    finally:
        if lock_handle:
            lock_handle.close()


def _log_db_startup(app: Flask) -> None:
    if not DB_STARTUP_CHECK:
        return
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        app.logger.info("Database connection check: OK")
    except Exception as exc:  # pragma: no cover
        app.logger.error("Database connection check failed: %s", exc)
