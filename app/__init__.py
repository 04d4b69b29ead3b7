"""
Trade Ops Workflow Service
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
from app.middleware.actor_context import init_actor_context
from app.middleware.diagnostics import run_startup_diagnostics
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; limits are per blueprint
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
    # Instantiate so ProductionConfig can refuse to start without DATABASE_URL / SECRET_KEY
    app.config.from_object(config[config_name]())
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB
    if str(app.config.get("SQLALCHEMY_DATABASE_URI", "")).startswith("sqlite:///") and not app.testing:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Request context (actor before the limiter keys on it) ────────────
    init_request_timing(app)
    init_actor_context(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Models (register tables on db.metadata for migrations) ───────────
    from app.models import workflow as _workflow_models  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-steps")
    @click.option("--entity-type", default=None, help="Only seed this entity type.")
    def seed_workflow_steps_cmd(entity_type):
        """Insert the default order / purchase_order / sourcing step catalogs (idempotent)."""
        from app.services.workflow_catalog import seed_catalog
        created = seed_catalog(entity_type)
        click.echo(f"Seeded {len(created)} new workflow step(s).")

    @app.cli.command("validate-workflow-steps")
    def validate_workflow_steps_cmd():
        """Report catalog problems (unknown prerequisites, cycles, duplicate keys)."""
        from app.models.workflow import ENTITY_TYPES
        from app.services.workflow_catalog import catalog_report
        failed = False
        for entity_type in ENTITY_TYPES:
            report = catalog_report(entity_type)
            click.echo(f"{entity_type}: {report['total_steps']} steps, "
                       f"{'ok' if report['valid'] else 'INVALID'}")
            for problem in report["problems"]:
                failed = True
                click.echo(f"  - [{problem['problem']}] {problem['detail']}")
        if failed:
            raise click.exceptions.Exit(1)

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
        logger.error("500 error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Startup diagnostics (+ optional catalog seeding) ─────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
