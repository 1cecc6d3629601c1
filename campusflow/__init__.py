"""
Campus Request Routing
Flask Application Factory.

Usage:
    from campusflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from campusflow.config import config
from campusflow.core.exceptions import (
    ConflictError,
    DependencyError,
    IdentityRequiredError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from campusflow.middleware.identity import init_identity
from campusflow.middleware.logging_config import configure_logging
from campusflow.middleware.rate_limiter import init_rate_limits
from campusflow.middleware.timing import init_request_timing
from campusflow.models import db
from campusflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402

# Tests flip this off: per-test drop_all/create_all on a populated in-memory DB.
_SQLITE_FK_ENFORCEMENT = True


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if _SQLITE_FK_ENFORCEMENT and "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def _register_error_handlers(app):
    """Map the service exception hierarchy to JSON responses once."""
    from campusflow.blueprints import BadRequest

    @app.errorhandler(BadRequest)
    def _bad_request(error):
        return error.response()

    @app.errorhandler(IdentityRequiredError)
    def _identity_required(error):
        return api_error(E.UNAUTHENTICATED, str(error))

    @app.errorhandler(UnauthorizedError)
    def _unauthorized(error):
        return api_error(E.FORBIDDEN, str(error))

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        logger.info("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation(error):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _conflict(error):
        code = E.CONFLICT_STATE if error.field in ("status", "version") else E.CONFLICT_DUPLICATE
        return api_error(code, str(error), details={"field": error.field})

    @app.errorhandler(DependencyError)
    def _dependency(error):
        logger.error("Dependency failure: %s", error)
        return api_error(E.DEPENDENCY, str(error), details={"dependency": error.dependency})

    @app.errorhandler(HTTPException)
    def _http(error):
        return {"error": error.description or error.name}, error.code

    @app.errorhandler(Exception)
    def _unexpected(error):
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    app.config.setdefault("MAX_CONTENT_LENGTH", (app.config["MAX_ATTACHMENT_MB"] + 1) * 1024 * 1024)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_identity(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from campusflow.models import org as _org_models                # noqa: F401
    from campusflow.models import workflow as _workflow_models      # noqa: F401
    from campusflow.models import request as _request_models        # noqa: F401
    from campusflow.models import delegation as _delegation_models  # noqa: F401
    from campusflow.models import notification as _notification_models  # noqa: F401
    from campusflow.models import audit as _audit_models            # noqa: F401

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite") and not app.config.get("TESTING"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from campusflow.blueprints.audit_bp import audit_bp
    from campusflow.blueprints.delegation_bp import delegation_bp
    from campusflow.blueprints.forms_bp import forms_bp
    from campusflow.blueprints.health_bp import health_bp
    from campusflow.blueprints.notification_bp import notification_bp
    from campusflow.blueprints.org_bp import org_bp
    from campusflow.blueprints.report_bp import report_bp
    from campusflow.blueprints.requests_bp import requests_bp
    from campusflow.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(requests_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(forms_bp)
    app.register_blueprint(delegation_bp)
    app.register_blueprint(org_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(report_bp)
    app.register_blueprint(health_bp)

    _register_error_handlers(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-roles")
    def seed_roles_cmd():
        """Create the default role set (admin, dean, head_of_department, ...)."""
        from campusflow.services.org_service import seed_default_roles
        count = seed_default_roles()
        db.session.commit()
        logger.info("Seeded %s new roles.", count)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
