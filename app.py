"""Application factory: entry point for the Flask application."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, session
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from celery_app import celery_init_app
from config import enable_sqlite_fks, load_config
from extensions import csrf, db, limiter
from models import User
from routes import register_blueprints
from services.errors import EntitlementError
from services.stripe_billing import StripeGateway

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _engine_options(db_uri: str) -> dict:
    """SQLite file databases are shared between request threads and workers."""
    if db_uri.startswith("sqlite") and db_uri not in ("sqlite://", "sqlite:///:memory:"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {}


def create_app():
    """Create and configure the Flask application."""
    app_cfg, email_cfg, billing_cfg, scheduler_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options(db_uri)
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["EMAIL_CONFIG"] = email_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["SCHEDULER_CONFIG"] = scheduler_cfg
    app.config["JSON_SORT_KEYS"] = False

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    app.extensions["billing_gateway"] = StripeGateway(billing_cfg)
    celery_init_app(app, scheduler_cfg)

    # Register all blueprints
    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_current_user():
        """Set ``g.current_user`` from the session."""
        g.current_user = None
        user_id = session.get("user_id")
        if user_id:
            user = db.session.get(User, user_id)
            if user and user.is_active:
                g.current_user = user
            else:
                session.clear()

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        if exception is not None:
            db.session.rollback()

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(EntitlementError)
    def entitlement_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", error.kind, error.message)
        else:
            logger.info("%s: %s", error.kind, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        kind = "rate_limited" if error.code == 429 else error.name.lower().replace(" ", "_")
        return jsonify({"error": kind, "message": error.description}), error.code

    @app.errorhandler(Exception)
    def server_error(error):
        logger.exception("Unhandled error: %s", error)
        db.session.rollback()
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
