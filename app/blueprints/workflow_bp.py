"""
Workflow Progress Blueprint.

REST API for step catalogs and per-entity step progress.

Endpoint groups:
  Catalog             GET/POST   /api/v1/workflow/steps
                      PUT/DELETE /api/v1/workflow/steps/<id>
                      POST       /api/v1/workflow/steps/seed
                      GET        /api/v1/workflow/steps/validate
  Phases              GET        /api/v1/workflow/phases
  Entity workflow     GET        /api/v1/workflow/<entity_type>/<entity_id>
                      GET        /api/v1/workflow/<entity_type>/<entity_id>/progress
  Step progress       PUT        /api/v1/workflow/<entity_type>/<entity_id>/steps/<step_key>
                      POST       .../steps/<step_key>/complete
                      POST       .../steps/<step_key>/start
                      PUT        .../steps/<step_key>/assignees
                      POST       .../steps/<step_key>/reset
  List badges         POST       /api/v1/workflow/<entity_type>/summaries

Layer contract:
  - Blueprint parses input, resolves the acting user and enforces the step
    action guards (/complete and /start) that the step dialog shows.
  - Service layer (workflow_service, workflow_catalog) owns all business
    logic, commits and cache invalidation.
  - The plain PUT upsert and /reset stay unguarded: they are the raw write
    operations and must remain usable for corrections.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

import app.services.workflow_catalog as catalog_svc
import app.services.workflow_service as workflow_svc
from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
    WorkflowStorageError,
)
from app.models.workflow import ENTITY_TYPES
from app.services.workflow_engine import evaluate_step_actions
from app.services.workflow_phases import DEFAULT_CLASSIFIER
from app.utils.errors import E, api_error
from app.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(WorkflowConfigurationError)
def _handle_configuration(error: WorkflowConfigurationError):
    return api_error(E.WORKFLOW_CONFIG, str(error), details=error.details)


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={error.field: error.value})


@workflow_bp.errorhandler(WorkflowStorageError)
def _handle_storage(error: WorkflowStorageError):
    if error.conflict:
        return api_error(E.CONFLICT_DUPLICATE, str(error))
    return api_error(E.DATABASE, str(error))


@workflow_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    logger.exception("Database error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _entity_type_arg():
    """Return (entity_type, None) or (None, error_response) for ?entity_type=."""
    entity_type = (request.args.get("entity_type") or "").strip()
    if not entity_type:
        return None, api_error(
            E.VALIDATION_REQUIRED, "entity_type query parameter is required",
            details={"entity_type": f"One of: {', '.join(ENTITY_TYPES)}"},
        )
    return entity_type, None


def _step_view_or_404(entity_type: str, entity_id: str, step_key: str):
    view = workflow_svc.get_workflow(entity_type, entity_id)
    step = view.get_step(step_key)
    if step is None:
        raise NotFoundError(resource="WorkflowStep", resource_id=f"{entity_type}:{step_key}")
    return step


def _blocked_response(step, action: str):
    return api_error(
        E.CONFLICT_STATE,
        f"Cannot {action} {step.step_key!r}: waiting for {', '.join(step.blocked_by_steps) or 'prerequisites'}",
        details={"step_key": step.step_key, "blocked_by_steps": list(step.blocked_by_steps)},
    )


def _mutation_response(entity_type: str, entity_id: str, row, status: int = 200):
    view = workflow_svc.get_workflow(entity_type, entity_id)
    return jsonify({
        "progress": row.to_dict() if row is not None else None,
        "workflow": view.summary(),
    }), status


# ═════════════════════════════════════════════════════════════════════════
# Catalog  (/api/v1/workflow/steps)
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/steps", methods=["GET"])
def list_steps():
    """Return the step catalog of one entity type in step_order."""
    entity_type, err = _entity_type_arg()
    if err:
        return err
    return jsonify(workflow_svc.get_steps(entity_type).to_dict())


@workflow_bp.route("/steps", methods=["POST"])
def create_step():
    """Add a step to a catalog. Prerequisites must already exist."""
    data = _json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    step = catalog_svc.create_step(data)
    return jsonify(step.to_dict()), 201


@workflow_bp.route("/steps/<int:step_id>", methods=["PUT"])
def update_step(step_id):
    data = _json_body()
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    step = catalog_svc.update_step(step_id, data)
    return jsonify(step.to_dict())


@workflow_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def delete_step(step_id):
    catalog_svc.delete_step(step_id)
    return jsonify({"message": "Workflow step deleted", "id": step_id})


@workflow_bp.route("/steps/seed", methods=["POST"])
def seed_steps():
    """Insert the default catalogs that are missing (idempotent)."""
    entity_type = _json_body().get("entity_type") or request.args.get("entity_type")
    created = catalog_svc.seed_catalog(entity_type)
    return jsonify({
        "created": len(created),
        "steps": [s.to_dict() for s in created],
    }), 201 if created else 200


@workflow_bp.route("/steps/validate", methods=["GET"])
def validate_steps():
    """Consistency report of one catalog (unknown prerequisites, cycles, duplicates)."""
    entity_type, err = _entity_type_arg()
    if err:
        return err
    return jsonify(catalog_svc.catalog_report(entity_type))


@workflow_bp.route("/phases", methods=["GET"])
def list_phases():
    return jsonify(DEFAULT_CLASSIFIER.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Entity workflow  (/api/v1/workflow/<entity_type>/<entity_id>)
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/<entity_type>/<entity_id>", methods=["GET"])
def get_workflow(entity_type, entity_id):
    """
    Composed workflow of one entity: every catalog step with its progress,
    blocking and allowed actions, plus the summary figures.

    ?group=phase adds the steps grouped by business phase.
    """
    view = workflow_svc.get_workflow(entity_type, entity_id)
    classifier = DEFAULT_CLASSIFIER if request.args.get("group") == "phase" else None
    return jsonify(view.to_dict(classifier=classifier))


@workflow_bp.route("/<entity_type>/<entity_id>/progress", methods=["GET"])
def get_progress(entity_type, entity_id):
    """Raw progress rows recorded for one entity (no composition)."""
    rows = workflow_svc.get_progress(entity_type, entity_id)
    return jsonify({
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "progress": [r.to_dict() for r in rows],
        "total": len(rows),
    })


@workflow_bp.route("/<entity_type>/summaries", methods=["POST"])
def get_summaries(entity_type):
    """Summary figures for many entities at once (list-page progress badges)."""
    entity_ids = _json_body().get("entity_ids")
    if not isinstance(entity_ids, list):
        return api_error(
            E.VALIDATION_REQUIRED, "entity_ids is required",
            details={"entity_ids": "Expected a list of ids"},
        )
    summaries = workflow_svc.get_workflow_summaries(entity_type, entity_ids)
    return jsonify({"entity_type": entity_type, "items": summaries, "total": len(summaries)})


# ═════════════════════════════════════════════════════════════════════════
# Step progress  (/api/v1/workflow/<entity_type>/<entity_id>/steps/<step_key>)
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/<entity_type>/<entity_id>/steps/<step_key>", methods=["PUT"])
def upsert_step_progress(entity_type, entity_id, step_key):
    """
    Record a step as completed or skipped.

    Body: {"status": "completed" | "skipped", "notes": "..."}
    """
    data = _json_body()
    status = data.get("status", "completed")
    if status not in ("completed", "skipped"):
        return api_error(
            E.VALIDATION_INVALID, "status must be 'completed' or 'skipped'",
            details={"status": status},
        )
    row = workflow_svc.complete_step(
        entity_type, entity_id, step_key,
        notes=data.get("notes"),
        skip=status == "skipped",
        actor_id=g.get("actor_id"),
    )
    return _mutation_response(entity_type, entity_id, row)


@workflow_bp.route("/<entity_type>/<entity_id>/steps/<step_key>/complete", methods=["POST"])
def complete_step(entity_type, entity_id, step_key):
    """
    Complete (or skip) a step from the step dialog.

    Body: {"skip": bool, "notes": "..."}
    Blocked steps cannot be completed, only skippable steps can be skipped,
    and skipping requires a note explaining why.
    """
    data = _json_body()
    skip = parse_bool(data.get("skip"), default=False)
    notes = (data.get("notes") or "").strip() or None

    if skip and not notes:
        return api_error(E.VALIDATION_REQUIRED, "notes are required when skipping a step",
                         details={"notes": "required"})

    step = _step_view_or_404(entity_type, entity_id, step_key)
    actions = evaluate_step_actions(step)
    if step.is_blocked:
        return _blocked_response(step, "skip" if skip else "complete")
    if skip and not actions.can_skip:
        return api_error(
            E.CONFLICT_STATE,
            f"Step {step_key!r} cannot be skipped" if not step.definition.can_skip
            else f"Step {step_key!r} is already {step.status}",
            details={"step_key": step_key, "status": step.status},
        )
    if not skip and not actions.can_complete:
        return api_error(
            E.CONFLICT_STATE, f"Step {step_key!r} is already {step.status}",
            details={"step_key": step_key, "status": step.status},
        )

    row = workflow_svc.complete_step(
        entity_type, entity_id, step_key,
        notes=notes, skip=skip, actor_id=g.get("actor_id"),
    )
    return _mutation_response(entity_type, entity_id, row)


@workflow_bp.route("/<entity_type>/<entity_id>/steps/<step_key>/start", methods=["POST"])
def start_step(entity_type, entity_id, step_key):
    """Mark a pending, unblocked step as in progress."""
    step = _step_view_or_404(entity_type, entity_id, step_key)
    if step.is_blocked:
        return _blocked_response(step, "start")
    if not evaluate_step_actions(step).can_start:
        return api_error(
            E.CONFLICT_STATE, f"Step {step_key!r} is already {step.status}",
            details={"step_key": step_key, "status": step.status},
        )
    row = workflow_svc.start_step(entity_type, entity_id, step_key)
    return _mutation_response(entity_type, entity_id, row)


@workflow_bp.route("/<entity_type>/<entity_id>/steps/<step_key>/assignees", methods=["PUT"])
def assign_step(entity_type, entity_id, step_key):
    """Replace the assignees of a step. Body: {"assigned_to": ["user-1", ...]}"""
    data = _json_body()
    if "assigned_to" not in data:
        return api_error(E.VALIDATION_REQUIRED, "assigned_to is required",
                         details={"assigned_to": "Expected a list of ids"})
    row = workflow_svc.assign_step(entity_type, entity_id, step_key, data["assigned_to"])
    return _mutation_response(entity_type, entity_id, row)


@workflow_bp.route("/<entity_type>/<entity_id>/steps/<step_key>/reset", methods=["POST"])
def reset_step(entity_type, entity_id, step_key):
    """Return a step to pending. A step that was never touched is left as is."""
    row = workflow_svc.reset_step(entity_type, entity_id, step_key)
    return _mutation_response(entity_type, entity_id, row)
