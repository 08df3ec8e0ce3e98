# backend/opscore/__init__.py
import logging

from flask import Flask, jsonify, request

from .config import Config
from .extensions import db, migrate


# StorageError kinds that map to a client error instead of 503.
STORAGE_ERROR_STATUS = {
    "not_found": 404,
    "conflict": 409,
    "unique_violation": 409,
    "validation": 400,
    "foreign_key_violation": 400,
    "not_null_violation": 400,
    "permission_denied": 403,
    "auth_expired": 401,
}


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("opscore").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.storage_gateway import init_gateway
    init_gateway(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.production import production_bp
    from .routes.integrity import integrity_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(production_bp)
    app.register_blueprint(integrity_bp)
    app.register_blueprint(admin_bp)

    register_error_handlers(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def register_error_handlers(app: Flask) -> None:
    """Turn service-layer exceptions into JSON responses with the collected notifications."""
    from .authorization import PermissionDeniedError
    from .services import notification_service
    from .services.storage_errors import StorageError
    from .validation import ConflictError, ValidationError

    def _error_response(body: dict, status: int):
        body["notifications"] = notification_service.drain()
        return jsonify(body), status

    @app.errorhandler(StorageError)
    def handle_storage_error(exc: StorageError):
        status = STORAGE_ERROR_STATUS.get(exc.kind.value, 503)
        app.logger.warning(
            "Storage error on %s %s: kind=%s operation=%s",
            request.method, request.path, exc.kind.value, exc.operation,
        )
        return _error_response({"error": exc.message, "storage_error": exc.to_dict()}, status)

    @app.errorhandler(PermissionDeniedError)
    def handle_permission_denied(exc: PermissionDeniedError):
        return _error_response({"error": str(exc)}, 403)

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        body = {"error": str(exc)}
        errors = getattr(exc, "errors", None)
        if errors is not None:
            body["errors"] = errors
        return _error_response(body, 400)

    @app.errorhandler(ConflictError)
    def handle_conflict(exc: ConflictError):
        return _error_response({"error": str(exc)}, 409)
