"""
Shared pytest fixtures for the workflow service test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, cache flush (autouse)
    - client: Flask test client (function-scoped)
    - abc_steps: Three-step order catalog A → B → C
    - seeded: Default order / purchase_order / sourcing catalogs
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.workflow import WorkflowStep, seed_default_steps
from app.services import cache_service


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Ids are reused after drop/create; cached catalogs would be stale.
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Catalog helpers ──────────────────────────────────────────────────────


def make_step(step_key, step_order, entity_type="order", **kw):
    """Insert one catalog step directly (bypasses catalog validation)."""
    step = WorkflowStep(
        entity_type=entity_type,
        step_key=step_key,
        step_name=kw.pop("step_name", step_key.replace("_", " ").title()),
        step_order=step_order,
        blocked_by_steps=kw.pop("blocked_by_steps", []),
        responsible_roles=kw.pop("responsible_roles", []),
        **kw,
    )
    _db.session.add(step)
    _db.session.commit()
    return step


@pytest.fixture()
def abc_steps():
    """Order catalog: A (order 1), B blocked by A (order 2), C blocked by B and skippable (order 3)."""
    return [
        make_step("step_a", 1),
        make_step("step_b", 2, blocked_by_steps=["step_a"]),
        make_step("step_c", 3, blocked_by_steps=["step_b"], can_skip=True),
    ]


@pytest.fixture()
def seeded():
    """Default catalogs for all entity types."""
    created = seed_default_steps()
    _db.session.commit()
    return created
