"""
Item Request Approval Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.auth import init_auth
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine
from sqlalchemy.exc import SQLAlchemyError

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
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
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

    # ── Acting user ──────────────────────────────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import directory as _directory_models      # noqa: F401
    from app.models import workflow as _workflow_models        # noqa: F401
    from app.models import request as _request_models          # noqa: F401
    from app.models import approval as _approval_models        # noqa: F401
    from app.models import audit as _audit_models              # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "testing":
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except SQLAlchemyError as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.audit_bp import audit_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.request_bp import request_bp
    from app.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(audit_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("backfill-pending-approvers")
    @click.option("--dry-run", is_flag=True, help="Report changes without writing them.")
    def backfill_pending_approvers_cmd(dry_run):
        """Recompute pending approvers for every in-flight request."""
        from app.services.backfill import backfill_pending_approvers
        report = backfill_pending_approvers(db.session, dry_run=dry_run)
        if dry_run:
            db.session.rollback()
        else:
            db.session.commit()
        logger.info(
            "Backfill %s: scanned=%s updated=%s unchanged=%s unresolved=%s",
            "dry-run" if dry_run else "applied",
            report.scanned, report.updated, report.unchanged, len(report.unresolved),
        )
        for item in report.unresolved:
            click.echo(f"unresolved: {item['form_kind']} #{item['id']} ({item['status']})")

    @app.cli.command("seed-departments")
    @click.argument("names", nargs=-1)
    def seed_departments_cmd(names):
        """Create departments that do not exist yet (defaults to the vehicle pool)."""
        from app.models.directory import Department
        names = names or (app.config["VEHICLE_APPROVER_DEPARTMENT"],)
        created = 0
        for name in names:
            if db.session.execute(
                db.select(Department).where(Department.name == name)
            ).scalar_one_or_none() is None:
                db.session.add(Department(name=name))
                created += 1
        db.session.commit()
        logger.info("Seeded %s new departments.", created)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
