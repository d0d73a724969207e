"""
Tracewell
Flask Application Factory.

Usage:
    from tracewell import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from tracewell.config import config
from tracewell.middleware.logging_config import configure_logging
from tracewell.middleware.timing import init_request_timing
from tracewell.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    init_request_timing(app)

    # ── Models (register tables on db.metadata) ──────────────────────────
    from tracewell.models import auth as _auth_models                # noqa: F401
    from tracewell.models import audit as _audit_models              # noqa: F401
    from tracewell.models import story as _story_models              # noqa: F401
    from tracewell.models import testing as _testing_models          # noqa: F401
    from tracewell.models import notification as _notification_models  # noqa: F401

    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from tracewell.blueprints.story_bp import story_bp
    from tracewell.blueprints.uat_bp import uat_bp

    app.register_blueprint(story_bp)
    app.register_blueprint(uat_bp)

    # ── Side-effect handlers ─────────────────────────────────────────────
    from tracewell.services.side_effects import init_side_effects
    init_side_effects(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sweep-story-locks")
    def sweep_story_locks_cmd():
        """Clear story edit locks whose expiry has passed."""
        from tracewell.services.edit_lock import sweep_expired_locks
        count = sweep_expired_locks()
        logger.info("Cleared %s expired story lock(s).", count)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Tracewell"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"success": False, "error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"success": False, "error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        db.session.rollback()
        if request.path.startswith("/api/"):
            return {"success": False, "error": "Internal server error", "code": "ERR_INTERNAL"}, 500
        return "<h1>500 - Internal Server Error</h1><p>An unexpected error occurred.</p>", 500

    return app
