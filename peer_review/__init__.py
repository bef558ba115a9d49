"""
Peer Review Programme
Flask Application Factory.

Usage:
    from peer_review import create_app
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
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from peer_review.config import config
from peer_review.middleware.jwt_auth import init_jwt_middleware
from peer_review.middleware.logging_config import configure_logging
from peer_review.middleware.rate_limiter import init_rate_limits
from peer_review.middleware.timing import init_request_timing
from peer_review.models import db
from peer_review.utils.errors import E, api_error

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
)


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
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

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

    # ── Request timing + identity middleware ─────────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so metadata (and Alembic) see every table ──────
    from peer_review.models import audit as _audit_models              # noqa: F401
    from peer_review.models import cap as _cap_models                  # noqa: F401
    from peer_review.models import checklist as _checklist_models      # noqa: F401
    from peer_review.models import finding as _finding_models          # noqa: F401
    from peer_review.models import organization as _organization_models  # noqa: F401
    from peer_review.models import review as _review_models            # noqa: F401
    from peer_review.models import reviewer as _reviewer_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        db.create_all()
        app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from peer_review.blueprints.cap_bp import cap_bp
    from peer_review.blueprints.checklist_bp import checklist_bp
    from peer_review.blueprints.finding_bp import finding_bp
    from peer_review.blueprints.health_bp import health_bp
    from peer_review.blueprints.review_bp import review_bp
    from peer_review.blueprints.reviewer_bp import reviewer_bp
    from peer_review.blueprints.team_bp import team_bp

    app.register_blueprint(review_bp)
    app.register_blueprint(team_bp)
    app.register_blueprint(reviewer_bp)
    app.register_blueprint(finding_bp)
    app.register_blueprint(cap_bp)
    app.register_blueprint(checklist_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.BAD_REQUEST, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"retry_after": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
