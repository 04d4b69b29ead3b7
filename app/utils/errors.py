"""JSON error payloads for the workflow API.

Every error leaves the service as ``{"error", "code", "details?"}`` so the step
dialog can tell a blocked step (409, with the unsatisfied prerequisites) from a
bad request body (400) or a broken catalog (422, with the problem list):

    api_error(E.CONFLICT_STATE, "Step is blocked",
              details={"step_key": "po_signed", "blocked_by_steps": ["PO Created"]})
    api_error(E.VALIDATION_REQUIRED, "entity_ids must be a list")
    api_error(E.WORKFLOW_CONFIG, "Workflow catalog for order is inconsistent",
              details={"problems": [...]})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes. ``ERR_*`` for request/state errors, ``WORKFLOW_*`` for catalog errors."""

    # 400: missing or malformed input
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 422: well-formed but rejected (unsupported entity type, bad catalog edit)
    VALIDATION_RULE = "ERR_VALIDATION_RULE"
    WORKFLOW_CONFIG = "WORKFLOW_CONFIG_INVALID"

    # 404: unknown catalog step id or step_key
    NOT_FOUND = "ERR_NOT_FOUND"

    # 409: duplicate step_key, or a step action not allowed in its current state
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.WORKFLOW_CONFIG: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a view; *status* overrides the code's default (400 if unmapped)."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
