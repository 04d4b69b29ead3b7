"""Shared utility functions for services and blueprints.

db_commit_or_raise:  single place that turns commit failures into WorkflowStorageError
parse_bool:          lenient boolean parsing for JSON bodies and query strings
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import WorkflowStorageError
from app.models import db

logger = logging.getLogger(__name__)


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_raise(what: str) -> None:
    """Commit the current SQLAlchemy session or roll back and raise.

    Args:
        what: Short description of the write, used in logs and the error message.

    Raises:
        WorkflowStorageError: conflict=True for IntegrityError (duplicate /
            constraint violation), conflict=False for anything else the
            storage layer raised. The session is rolled back in both cases,
            so prior state is untouched.

    Usage::

        db.session.add(row)
        db_commit_or_raise("complete step po_signed")
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit (%s): %s", what, exc.orig)
        raise WorkflowStorageError(f"Could not save {what}: constraint violation", conflict=True) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error on commit (%s)", what)
        raise WorkflowStorageError(f"Could not save {what}: database error") from exc


def parse_bool(value, default=False):
    """Parse a JSON/query-string boolean.

    Accepts real booleans, 1/0 and the strings true/false/yes/no/on/off.
    Returns *default* for None or anything unrecognised.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default
