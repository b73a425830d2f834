# backend/storefront/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, *, gateway=None, event_sink=None) -> Flask:
    """
    Build the application.

    gateway / event_sink replace the configured Midtrans client and the
    logging sink (tests pass fakes here).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if isinstance(level, int):
        app.logger.setLevel(level)
        logging.getLogger("storefront").setLevel(level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .registry import EXTENSION_KEY, build_services
    from .services.events import LoggingEventSink
    from .services.payment_gateway import build_gateway

    if app.config.get("APP_ENV") == "production" and app.config.get("WEBHOOK_SIGNATURE_BYPASS"):
        app.logger.warning("WEBHOOK_SIGNATURE_BYPASS is ignored in production")

    app.extensions[EXTENSION_KEY] = build_services(
        app.config,
        gateway=gateway or build_gateway(app.config),
        events=event_sink or LoggingEventSink(),
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.inventory import inventory_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(inventory_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
