"""
Workflow Progress — Service Layer.

Business logic for:
    - Reads:      catalog + progress rows of one entity → composed WorkflowView
    - Summaries:  list-page progress badges for many entities in one query
    - Mutators:   complete / skip, reset, start, assign (single-row upserts)

Write semantics:
    One action = one row = one commit. Concurrent writers on the same
    (entity_type, entity_id, step_key) race at the storage layer and the last
    commit wins. Mutations never cascade to other steps; blocking is simply
    recomputed on the next read. Every successful mutation drops the cached
    progress of the entity so that read sees the new state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.workflow import WorkflowProgress
from app.services import cache_service
from app.services.workflow_catalog import StepCatalog, load_catalog, validate_entity_type
from app.services.workflow_engine import (
    RecordedProgress,
    WorkflowView,
    compose_workflow,
)
from app.services.workflow_phases import DEFAULT_CLASSIFIER, PhaseClassifier
from app.utils.helpers import db_commit_or_raise

logger = logging.getLogger(__name__)

MAX_SUMMARY_IDS = 500


# ── Helpers ──────────────────────────────────────────────────────────────────


def _progress_ttl() -> int:
    if not has_app_context():
        return cache_service.DEFAULT_TTL
    return int(current_app.config.get("WORKFLOW_CACHE_TTL", cache_service.DEFAULT_TTL))


def _normalize_entity_id(entity_id) -> str:
    value = "" if entity_id is None else str(entity_id).strip()
    if not value:
        raise ValidationError("entity_id is required", details={"entity_id": "required"})
    if len(value) > 64:
        raise ValidationError("entity_id is too long", details={"entity_id": "max 64 characters"})
    return value


def _require_step(entity_type: str, step_key: str) -> StepCatalog:
    catalog = load_catalog(entity_type)
    if step_key not in catalog:
        raise NotFoundError(resource="WorkflowStep", resource_id=f"{entity_type}:{step_key}")
    return catalog


def _find_row(entity_type: str, entity_id: str, step_key: str) -> WorkflowProgress | None:
    return db.session.execute(
        select(WorkflowProgress).where(
            WorkflowProgress.entity_type == entity_type,
            WorkflowProgress.entity_id == entity_id,
            WorkflowProgress.step_key == step_key,
        )
    ).scalar_one_or_none()


def _get_or_new_row(entity_type: str, entity_id: str, step_key: str) -> WorkflowProgress:
    row = _find_row(entity_type, entity_id, step_key)
    if row is None:
        row = WorkflowProgress(
            entity_type=entity_type,
            entity_id=entity_id,
            step_key=step_key,
            status="pending",
            assigned_to=[],
        )
        db.session.add(row)
    return row


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


def get_steps(entity_type: str) -> StepCatalog:
    """Catalog of *entity_type* in step_order."""
    return load_catalog(entity_type)


def get_progress(entity_type: str, entity_id) -> list[RecordedProgress]:
    """All progress rows of one entity (unordered set semantics, cached)."""
    validate_entity_type(entity_type)
    entity_id = _normalize_entity_id(entity_id)

    def _loader():
        rows = db.session.execute(
            select(WorkflowProgress).where(
                WorkflowProgress.entity_type == entity_type,
                WorkflowProgress.entity_id == entity_id,
            )
        ).scalars().all()
        return [RecordedProgress.from_row(r).to_dict() for r in rows]

    data = cache_service.get_cached(
        cache_service.progress_key(entity_type, entity_id),
        ttl=_progress_ttl(),
        loader=_loader,
    )
    return [RecordedProgress.from_dict(d) for d in data or []]


def get_workflow(
    entity_type: str,
    entity_id,
    classifier: PhaseClassifier = DEFAULT_CLASSIFIER,
) -> WorkflowView:
    """Compose the full workflow view of one entity."""
    catalog = load_catalog(entity_type)
    progress = get_progress(entity_type, entity_id)
    return compose_workflow(entity_type, _normalize_entity_id(entity_id), catalog.steps, progress, classifier)


def get_workflow_summaries(entity_type: str, entity_ids) -> list[dict]:
    """
    Summary figures for many entities of one type (list-page badges).

    One catalog load and one progress query regardless of how many ids are
    passed. Output order follows the first occurrence of each id.
    """
    catalog = load_catalog(entity_type)
    ids: list[str] = []
    for raw in entity_ids or []:
        eid = _normalize_entity_id(raw)
        if eid not in ids:
            ids.append(eid)
    if len(ids) > MAX_SUMMARY_IDS:
        raise ValidationError(
            f"At most {MAX_SUMMARY_IDS} entity_ids per request",
            details={"entity_ids": f"got {len(ids)}"},
        )
    if not ids:
        return []

    rows = db.session.execute(
        select(WorkflowProgress).where(
            WorkflowProgress.entity_type == entity_type,
            WorkflowProgress.entity_id.in_(ids),
        )
    ).scalars().all()
    by_entity: dict[str, list[RecordedProgress]] = {}
    for r in rows:
        by_entity.setdefault(r.entity_id, []).append(RecordedProgress.from_row(r))

    return [
        compose_workflow(entity_type, eid, catalog.steps, by_entity.get(eid, [])).summary()
        for eid in ids
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Mutators
# ═════════════════════════════════════════════════════════════════════════════


def complete_step(
    entity_type: str,
    entity_id,
    step_key: str,
    notes: str | None = None,
    skip: bool = False,
    actor_id: str | None = None,
) -> WorkflowProgress:
    """
    Mark a step completed (or skipped) on one entity.

    Upserts the single progress row: status completed|skipped, completed_at now,
    completed_by the acting user. Notes are overwritten on every call, so a
    completion without notes clears any earlier note.

    Raises:
        ValidationError / NotFoundError: unsupported entity_type or unknown step_key.
        WorkflowStorageError: the write failed and was rolled back.
    """
    validate_entity_type(entity_type)
    entity_id = _normalize_entity_id(entity_id)
    _require_step(entity_type, step_key)

    row = _get_or_new_row(entity_type, entity_id, step_key)
    row.status = "skipped" if skip else "completed"
    row.completed_at = datetime.now(timezone.utc)
    row.completed_by = actor_id
    row.notes = notes or None

    db_commit_or_raise(f"{row.status} {entity_type}:{entity_id}:{step_key}")
    cache_service.invalidate_progress(entity_type, entity_id)
    logger.info(
        "Workflow step %s: %s:%s %s by %s",
        row.status, entity_type, entity_id, step_key, actor_id or "unknown",
    )
    return row


def reset_step(entity_type: str, entity_id, step_key: str) -> WorkflowProgress | None:
    """
    Return a step to pending on one entity.

    Clears completed_at / completed_by and keeps notes. Without an existing
    row this is a successful no-op (no row is created). Downstream steps keep
    their own status.
    """
    validate_entity_type(entity_type)
    entity_id = _normalize_entity_id(entity_id)
    _require_step(entity_type, step_key)

    row = _find_row(entity_type, entity_id, step_key)
    if row is None:
        logger.debug("Reset on untouched step %s:%s:%s, nothing to do", entity_type, entity_id, step_key)
        return None

    row.status = "pending"
    row.completed_at = None
    row.completed_by = None
    db_commit_or_raise(f"reset {entity_type}:{entity_id}:{step_key}")
    cache_service.invalidate_progress(entity_type, entity_id)
    logger.info("Workflow step reset: %s:%s %s", entity_type, entity_id, step_key)
    return row


def start_step(entity_type: str, entity_id, step_key: str) -> WorkflowProgress:
    """Mark a step in progress on one entity (upsert, completion fields cleared)."""
    validate_entity_type(entity_type)
    entity_id = _normalize_entity_id(entity_id)
    _require_step(entity_type, step_key)

    row = _get_or_new_row(entity_type, entity_id, step_key)
    row.status = "in_progress"
    row.completed_at = None
    row.completed_by = None

    db_commit_or_raise(f"start {entity_type}:{entity_id}:{step_key}")
    cache_service.invalidate_progress(entity_type, entity_id)
    logger.info("Workflow step started: %s:%s %s", entity_type, entity_id, step_key)
    return row


def assign_step(entity_type: str, entity_id, step_key: str, assignee_ids) -> WorkflowProgress:
    """Replace the assignees of a step on one entity without touching its status."""
    validate_entity_type(entity_type)
    entity_id = _normalize_entity_id(entity_id)
    _require_step(entity_type, step_key)
    if not isinstance(assignee_ids, (list, tuple)):
        raise ValidationError("assigned_to must be a list", details={"assigned_to": "Expected a list of ids"})

    assignees: list[str] = []
    for a in assignee_ids:
        value = str(a).strip() if a is not None else ""
        if not value:
            raise ValidationError("assigned_to contains an empty id", details={"assigned_to": repr(a)})
        if value not in assignees:
            assignees.append(value)

    row = _get_or_new_row(entity_type, entity_id, step_key)
    row.assigned_to = assignees

    db_commit_or_raise(f"assign {entity_type}:{entity_id}:{step_key}")
    cache_service.invalidate_progress(entity_type, entity_id)
    logger.info("Workflow step assigned: %s:%s %s → %s", entity_type, entity_id, step_key, assignees)
    return row
