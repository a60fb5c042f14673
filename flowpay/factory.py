"""
Application Factory for FlowPay

Implements the Flask application factory pattern with:
- Blueprint registration
- Security configuration (TLS, headers, rate limits)
- Database, cache and ledger initialization
- JSON error handling for transfer lifecycle errors
"""

import logging
import secrets
from typing import Optional

from flask import Flask, current_app, jsonify, request

from flowpay.audit_logger import init_audit_logger
from flowpay.config import AppConfig, get_config, validate_config
from flowpay.database import get_redis, get_session_factory, init_all
from flowpay.errors import TransferError
from flowpay.ledger import build_ledger
from flowpay.notifier import EmailNotifier
from flowpay.security import init_security
from flowpay.service import TransferService, TransferSettings
from flowpay.store import TransferStore

logger = logging.getLogger(__name__)


def build_service(cfg: AppConfig) -> TransferService:
    """Wire the lifecycle manager to the initialised database and backends."""
    return TransferService(
        store=TransferStore(get_session_factory()),
        ledger=build_ledger(cfg),
        notifier=EmailNotifier.from_config(cfg),
        settings=TransferSettings.from_config(cfg),
        redis_client=get_redis(),
    )


def get_service() -> TransferService:
    return current_app.extensions["flowpay"]


def create_app(config_override: Optional[AppConfig] = None, service: Optional[TransferService] = None) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Optional configuration override for testing
        service: Pre-built TransferService; skips database and backend setup

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # Load configuration
    cfg = config_override or get_config()
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg

    if cfg.get("FLASK_SECRET_KEY"):
        app.secret_key = cfg["FLASK_SECRET_KEY"]
    else:
        logger.warning("FLASK_SECRET_KEY not set; using an ephemeral key")
        app.secret_key = secrets.token_hex(32)

    # Initialize security middleware (Talisman, rate limiting, logging)
    init_security(app, cfg)

    if service is None:
        try:
            init_all(db_url=cfg.get("DATABASE_URL"))
            init_audit_logger()
            service = build_service(cfg)
            logger.info("✅ Database, cache, ledger and audit logging initialized")
        except Exception as e:
            logger.error(f"❌ Infrastructure initialization failed: {e}")
            raise
    app.extensions["flowpay"] = service

    register_blueprints(app)
    register_error_handlers(app)
    register_request_handlers(app)

    from flowpay.cli import register_cli

    register_cli(app)

    logger.info("🚀 Application factory completed successfully")
    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    # Transfer lifecycle API (create, claim, refund, queries)
    from flowpay.blueprints.transfers import transfers_bp

    app.register_blueprint(transfers_bp, url_prefix="/api/transfers")

    # Admin/operations blueprint (health, metrics, scheduled jobs)
    from flowpay.blueprints.admin import admin_bp

    app.register_blueprint(admin_bp)

    logger.info("✅ All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    @app.errorhandler(TransferError)
    def transfer_error(e: TransferError):
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"success": False, "error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "error": "method_not_allowed", "message": str(e)}), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        return jsonify({"success": False, "error": "rate_limit_exceeded", "message": str(e)}), 429

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify({"success": False, "error": "internal_error", "message": "An unexpected error occurred"}), 500


def register_request_handlers(app: Flask) -> None:
    """Register before/after request handlers."""

    @app.after_request
    def add_cors_headers(response):
        cfg = app.config.get("APP_CONFIG", {})
        origins = cfg.get("CORS_ORIGINS", "*")
        if request.path.startswith("/api/") and origins:
            response.headers.setdefault("Access-Control-Allow-Origin", origins)
            response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type, X-Sender-Id, X-Sender-Address")
        return response

    @app.teardown_appcontext
    def cleanup(error=None):
        """Cleanup resources after request."""
        if error:
            logger.error(f"Request cleanup with error: {error}")
