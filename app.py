"""Application factory, the entry point for the billing API."""

from __future__ import annotations

import logging
import os
import uuid

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from cli import billing_cli
from config import enable_sqlite_fks, load_config
from errors import BillingError, InvariantViolationError, PermissionDeniedError, ValidationError
from extensions import db, limiter
from models import Tenant
from routes import register_blueprints
from services.events import EVENT_SINK_KEY, LoggingEventSink
from services.gateway import GATEWAY_KEY, build_gateway
from services.tenant import TenantSecurityError, register_tenant_guards

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


def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, gateway_cfg, db_uri = load_config()
    logging.getLogger().setLevel(app_cfg.log_level.upper())

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["GATEWAY_CONFIG"] = gateway_cfg
    app.config["RATELIMIT_ENABLED"] = os.environ.get("RATELIMIT_ENABLED", "true").lower() in (
        "true",
        "1",
        "yes",
    )

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    # Collaborators; tests replace these on app.extensions
    app.extensions[EVENT_SINK_KEY] = LoggingEventSink()
    app.extensions[GATEWAY_KEY] = build_gateway(gateway_cfg)

    # Register tenant write-protection guard
    register_tenant_guards(app)

    register_blueprints(app)
    app.cli.add_command(billing_cli)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def load_actor_and_tenant():
        """Set ``g.actor``, ``g.actor_role`` and ``g.current_tenant`` from headers."""
        g.actor = (request.headers.get("X-Actor") or "").strip() or None
        g.actor_role = (request.headers.get("X-Actor-Role") or "").strip().lower() or None
        g.current_tenant = None
        g._tenant_id = None

        raw_tenant = (request.headers.get("X-Tenant-ID") or "").strip()
        if not raw_tenant:
            return None
        try:
            tenant_id = int(raw_tenant)
        except ValueError:
            raise ValidationError("X-Tenant-ID must be an integer.")
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            logger.warning("Rejected request for unknown or inactive tenant %s", raw_tenant)
            raise PermissionDeniedError("Unknown or inactive tenant.")
        g.current_tenant = tenant
        g._tenant_id = tenant.id
        return None

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cache-Control"] = "no-store"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(BillingError)
    def billing_error(error):
        if isinstance(error, InvariantViolationError):
            logger.error("Invariant violation on %s %s: %s", request.method, request.path, error.message)
        return jsonify({"error": error.to_dict()}), error.status_code

    @app.errorhandler(TenantSecurityError)
    def tenant_security_error(error):
        logger.error("Blocked cross-tenant write on %s %s: %s", request.method, request.path, error)
        db.session.rollback()
        return jsonify({"error": {"kind": "permission_denied", "message": "Cross-tenant write blocked."}}), 403

    @app.errorhandler(HTTPException)
    def http_error(error):
        kind = {
            400: "validation_error",
            403: "permission_denied",
            404: "not_found",
            405: "method_not_allowed",
            409: "state_conflict",
            429: "rate_limited",
        }.get(error.code, "http_error")
        return jsonify({"error": {"kind": kind, "message": error.description}}), error.code

    @app.errorhandler(Exception)
    def server_error(error):
        correlation_id = uuid.uuid4().hex
        logger.exception("Unhandled error %s on %s %s", correlation_id, request.method, request.path)
        db.session.rollback()
        return (
            jsonify({
                "error": {
                    "kind": "internal_error",
                    "message": "Internal server error.",
                    "correlation_id": correlation_id,
                }
            }),
            500,
        )

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
