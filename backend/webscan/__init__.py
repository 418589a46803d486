# webscan/__init__.py
"""
App factory.

    - Configuration from environment variables, overridable with a mapping
      (tests pass one)
    - WEBSCAN_ENV=production requires SECRET_KEY and SQLALCHEMY_DATABASE_URI
      and turns on the private-network admission policy
    - CORS origins from CORS_ORIGINS
    - Scan queue opened from REDIS_URL and stored on app.extensions
    - Flask-Migrate manages schema; db.create_all() is not called here
"""

from __future__ import annotations

import logging
import os
import re
import traceback
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate

from .extensions import db, get_scan_queue, init_extensions
from . import models
from .scans import scans_bp

error_logger = logging.getLogger("webscan.errors")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> dict:
    """Read configuration from the environment."""
    return {
        "WEBSCAN_ENV": os.getenv("WEBSCAN_ENV", "development").strip().lower(),
        "SECRET_KEY": os.getenv("SECRET_KEY"),
        "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "REDIS_URL": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        "QUEUE_NAME": os.getenv("QUEUE_NAME", "scan-queue"),
        "QUEUE_MAX_ATTEMPTS": int(os.getenv("QUEUE_MAX_ATTEMPTS", "3")),
        "WORKER_CONCURRENCY": int(os.getenv("WORKER_CONCURRENCY", "2")),
        "DUPLICATE_WINDOW_SECONDS": int(os.getenv("DUPLICATE_WINDOW_SECONDS", "300")),
        "DAILY_RESET_TZ": os.getenv("DAILY_RESET_TZ") or None,
        "SCHEDULER_ENABLED": _env_bool("SCHEDULER_ENABLED", True),
        "CORS_ORIGINS": os.getenv("CORS_ORIGINS"),
    }


def create_app(config: Optional[Mapping[str, Any]] = None, scan_queue=None) -> Flask:
    app = Flask(__name__)

    settings = load_config()
    settings.update(config or {})
    is_prod = settings["WEBSCAN_ENV"] == "production"

    # ── Logging ──────────────────────────────────────────────────────
    if is_prod:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        app.logger.setLevel(logging.INFO)
    else:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
        app.logger.setLevel(logging.DEBUG)

    # Werkzeug logs every request
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    # ─────────────────────────────────────────────────────────────────

    # ── CORS ────────────────────────────────────────────────────────
    # Production: set CORS_ORIGINS="https://scan.example.com" in .env
    # Dev: falls back to localhost origins if not set
    cors_env = settings.get("CORS_ORIGINS")
    if cors_env:
        cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        cors_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            re.compile(r"http://192\.168\.\d+\.\d+:3000"),
        ]

    CORS(app, resources={
        r"/*": {
            "origins": cors_origins,
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "OPTIONS"],
        }
    })

    # ── Secret Key ───────────────────────────────────────────────────
    if is_prod and not settings.get("SECRET_KEY"):
        raise RuntimeError(
            "SECRET_KEY environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    settings["SECRET_KEY"] = settings.get("SECRET_KEY") or "dev-secret-key-change-me"

    # ── Database ─────────────────────────────────────────────────────
    # PostgreSQL in production. SQLite fallback for local development only.
    if not settings.get("SQLALCHEMY_DATABASE_URI"):
        if is_prod:
            raise RuntimeError(
                "SQLALCHEMY_DATABASE_URI environment variable is not set. "
                "Set it to a PostgreSQL connection string, e.g.: "
                "postgresql://webscan:PASSWORD@db:5432/webscan"
            )
        settings["SQLALCHEMY_DATABASE_URI"] = "sqlite:///webscan.db"

    app.config.update(settings)

    # ── Extensions ───────────────────────────────────────────────────
    init_extensions(app, scan_queue=scan_queue)
    Migrate(app, db)

    # ── Blueprints ───────────────────────────────────────────────────
    app.register_blueprint(scans_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # JSON for all errors; tracebacks are logged, never returned.

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({
            "error": "Bad request",
            "message": str(e.description) if hasattr(e, "description") else "The request was malformed or invalid.",
        }), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({
            "error": "Unauthorized",
            "message": "Authentication is required.",
        }), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({
            "error": "Forbidden",
            "message": "You do not have permission to access this resource.",
        }), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
        }), 429

    @app.errorhandler(500)
    def internal_error(e):
        error_logger.error(
            "500 Internal Server Error:\n%s", traceback.format_exc()
        )
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception. Tracebacks are logged only."""
        error_logger.error(
            "Unhandled exception: %s\n%s", str(e), traceback.format_exc()
        )
        return jsonify({
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    # ─────────────────────────────────────────────────────────────────

    # Health check
    @app.get("/health")
    def health():
        queue_health = get_scan_queue(app).health()
        status = "up and running" if queue_health.get("healthy") else "degraded"
        return jsonify(status=status, queue=queue_health), 200

    # ── Schema Management ────────────────────────────────────────────
    # Flask-Migrate (Alembic) manages the schema.
    # Run: flask --app webscan db upgrade
    # ─────────────────────────────────────────────────────────────────

    return app
