"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database, the workflow tables and catalogs, the cache backend,
optionally seeds the default catalogs, and logs a summary banner.
"""

import logging
import sys

from flask import Flask
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import WorkflowStorageError
from app.models import db
from app.models.workflow import ENTITY_TYPES
from app.services import cache_service

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("workflow_steps", "workflow_progress")


def _catalog_status(issues: list[str]) -> dict[str, str]:
    from app.services.workflow_catalog import catalog_report

    status = {}
    for entity_type in ENTITY_TYPES:
        report = catalog_report(entity_type)
        if report["total_steps"] == 0:
            status[entity_type] = "empty"
            issues.append(f"No {entity_type} steps — run 'flask seed-workflow-steps'")
        elif not report["valid"]:
            status[entity_type] = f"{report['total_steps']} steps, {len(report['problems'])} problem(s)"
            issues.append(f"{entity_type} catalog inconsistent — see GET /api/v1/workflow/steps/validate")
        else:
            status[entity_type] = f"{report['total_steps']} steps"
    return status


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []
    py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

    with app.app_context():
        # ── Database connectivity ────────────────────────────────────
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        db_status = "ok"
        missing: list[str] = []
        try:
            db.session.execute(db.text("SELECT 1"))
            tables = set(sa_inspect(db.engine).get_table_names())
            missing = [t for t in REQUIRED_TABLES if t not in tables]
        except SQLAlchemyError as exc:
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")
        if missing:
            issues.append(f"Missing tables {', '.join(missing)} — run 'flask db upgrade'")

        # ── Default catalogs ─────────────────────────────────────────
        catalogs: dict[str, str] = {}
        if db_status == "ok" and not missing:
            if app.config.get("WORKFLOW_SEED_ON_STARTUP"):
                from app.services.workflow_catalog import seed_catalog
                try:
                    seed_catalog()
                except WorkflowStorageError as exc:
                    issues.append(f"Seeding default catalogs failed: {exc}")
            catalogs = _catalog_status(issues)

        # ── Cache ────────────────────────────────────────────────────
        cache = cache_service.health_check()
        cache_status = cache.get("backend", cache.get("detail", "?"))

        lines = [
            f"Python      : {py}",
            f"Debug       : {app.debug}",
            f"Database    : {db_type} ({db_status})",
            f"Cache       : {cache_status}",
            f"Strict      : {app.config.get('WORKFLOW_STRICT_CATALOG')}",
        ]
        lines += [f"{et:<12}: {desc}" for et, desc in catalogs.items()]
        logger.info("Workflow service startup diagnostics\n  %s", "\n  ".join(lines))

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
