"""
Application Factory for lnbridge

Implements the Flask application factory pattern with:
- Blueprint registration
- Security configuration (TLS, headers, rate limits)
- Database and cache initialization
- Engine wiring and error handling
- Maintenance CLI for an external scheduler
"""

import logging
from typing import Callable, Optional

import click
from flask import Flask, jsonify, request
from flask.cli import AppGroup

from lnbridge.audit_logger import init_audit_logger
from lnbridge.config import AppConfig, get_config, validate_config
from lnbridge.database import close_all, init_all, remove_session
from lnbridge.exceptions import LightningServiceError
from lnbridge.node_gateway import NodeGateway
from lnbridge.security import init_security, on_rate_limited
from lnbridge.services import EXTENSION_KEY, LightningServices

logger = logging.getLogger(__name__)


def create_app(
    config_override: Optional[AppConfig] = None,
    clock: Optional[Callable] = None,
    node: Optional[NodeGateway] = None,
) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Optional configuration override for testing
        clock: Optional UTC clock shared by all engines (tests)
        node: Optional node gateway replacement (tests)

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # Load configuration
    cfg = config_override or get_config()
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg

    app.secret_key = cfg.get("FLASK_SECRET_KEY") or cfg["JWT_SECRET"]

    init_security(app, cfg)

    try:
        init_all(cfg)
        init_audit_logger()
        logger.info("Database, cache, and audit logging initialized")
    except Exception as e:
        logger.error(f"Infrastructure initialization failed: {e}")
        raise

    app.extensions[EXTENSION_KEY] = LightningServices(cfg, clock=clock, node=node)

    register_blueprints(app)
    register_error_handlers(app)
    register_request_handlers(app)
    register_cli(app)

    logger.info("Application factory completed successfully")
    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    from lnbridge.blueprints.balance import balance_bp
    from lnbridge.blueprints.health import health_bp
    from lnbridge.blueprints.lnurl_auth import auth_bp
    from lnbridge.blueprints.lnurl_withdraw import lnurl_bp
    from lnbridge.blueprints.withdrawals import withdrawals_bp

    # LNURL-auth login and wallet linking
    app.register_blueprint(auth_bp, url_prefix="/api/auth")

    # LNURL-withdraw wallet protocol
    app.register_blueprint(lnurl_bp, url_prefix="/api/lnurl")

    # Balances and admin payouts
    app.register_blueprint(balance_bp, url_prefix="/api/balance")
    app.register_blueprint(withdrawals_bp, url_prefix="/api/withdrawals")

    app.register_blueprint(health_bp)

    logger.info("All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    @app.errorhandler(LightningServiceError)
    def service_error(e: LightningServiceError):
        if e.status_code >= 500:
            logger.warning(f"{type(e).__name__}: {e.message}")
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "forbidden", "message": "Access denied"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        on_rate_limited(request.remote_addr, request.path)
        return jsonify({"error": "rate_limit_exceeded", "message": str(e)}), 429

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify({"error": "internal_error", "message": "An unexpected error occurred"}), 500


def register_request_handlers(app: Flask) -> None:
    """Register before/after request handlers."""

    @app.teardown_appcontext
    def cleanup(error=None):
        if error:
            logger.error(f"Request cleanup with error: {error}")
        remove_session()


def register_cli(app: Flask) -> None:
    """``flask lnbridge ...`` maintenance commands."""

    lnbridge_cli = AppGroup("lnbridge", help="Lightning login and payout maintenance.")

    @lnbridge_cli.command("cleanup")
    def cleanup_command():
        """Purge expired challenges, expire stale withdrawals and reconcile refunds."""
        result = app.extensions[EXTENSION_KEY].run_maintenance()
        click.echo(
            f"Purged {result['challengesPurged']} challenges, "
            f"expired {result['withdrawalsExpired']} withdrawals, "
            f"reconciled {result['refundsReconciled']} refunds"
        )

    app.cli.add_command(lnbridge_cli)


def shutdown_app(app: Flask) -> None:
    """Release engine threads and database connections."""
    services = app.extensions.get(EXTENSION_KEY)
    if services is not None:
        services.shutdown()
    close_all()
