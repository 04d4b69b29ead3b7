"""
Workflow Step Catalog — Service Layer.

Business logic for:
    - Catalog snapshots:     immutable StepCatalog per entity type, cached
    - Catalog validation:    duplicate keys, unknown prerequisites, cycles
    - Catalog maintenance:   create / update / delete a step with validation
    - Default catalogs:      idempotent seeding for order, purchase_order, sourcing

The catalog is configuration: it is loaded once per cache window and handed
to the composer as an explicit argument, never read from module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from flask import current_app, has_app_context
from sqlalchemy import func, select

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.models import db
from app.models.workflow import ENTITY_TYPES, WorkflowStep, find_cycle, seed_default_steps
from app.services import cache_service
from app.services.workflow_engine import StepDefinition
from app.utils.helpers import db_commit_or_raise, parse_bool

logger = logging.getLogger(__name__)

# Fields an admin may change on an existing step. entity_type and step_key are
# immutable because progress rows and other steps refer to them by key.
UPDATABLE_FIELDS = (
    "step_name", "step_name_cn", "step_order",
    "is_required", "can_skip", "auto_complete",
    "blocked_by_steps", "responsible_roles",
)

_BOOL_FIELDS = ("is_required", "can_skip", "auto_complete")
_LIST_FIELDS = ("blocked_by_steps", "responsible_roles")


# ═════════════════════════════════════════════════════════════════════════════
# Snapshot
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepCatalog:
    """Ordered, immutable catalog of one entity type."""
    entity_type: str
    steps: tuple[StepDefinition, ...]

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_key) -> bool:
        return any(s.step_key == step_key for s in self.steps)

    def get(self, step_key: str) -> StepDefinition | None:
        return next((s for s in self.steps if s.step_key == step_key), None)

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(s.step_key for s in self.steps)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "steps": [s.to_dict() for s in self.steps],
            "total": len(self.steps),
        }


def validate_entity_type(entity_type: str) -> str:
    """Return *entity_type* if supported, else raise ValidationError."""
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"Unsupported entity_type {entity_type!r}",
            details={"entity_type": f"Must be one of: {', '.join(ENTITY_TYPES)}"},
        )
    return entity_type


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


def validate_catalog(definitions) -> list[dict]:
    """
    Check one entity type's catalog for configuration errors.

    Returns a list of problem dicts ({"problem", "step_key", "detail"}); empty
    when the catalog is consistent. Prerequisites must name steps of the same
    catalog, so a key from another entity type shows up as unknown.
    """
    problems: list[dict] = []
    seen: set[str] = set()
    for d in definitions:
        if d.step_key in seen:
            problems.append({
                "problem": "duplicate_key",
                "step_key": d.step_key,
                "detail": f"step_key {d.step_key!r} appears more than once",
            })
        seen.add(d.step_key)

    for d in definitions:
        for ref in d.blocked_by_steps:
            if ref == d.step_key:
                problems.append({
                    "problem": "self_reference",
                    "step_key": d.step_key,
                    "detail": f"{d.step_key!r} lists itself as a prerequisite",
                })
            elif ref not in seen:
                problems.append({
                    "problem": "unknown_prerequisite",
                    "step_key": d.step_key,
                    "detail": f"{d.step_key!r} is blocked by unknown step {ref!r}",
                })

    graph = {
        d.step_key: [r for r in d.blocked_by_steps if r != d.step_key]
        for d in definitions
    }
    cycle = find_cycle(graph)
    if cycle:
        problems.append({
            "problem": "cycle",
            "step_key": cycle[0],
            "detail": "Prerequisite cycle: " + " → ".join(cycle),
        })
    return problems


def _strict_mode() -> bool:
    if not has_app_context():
        return False
    return parse_bool(current_app.config.get("WORKFLOW_STRICT_CATALOG"), default=False)


def _catalog_ttl() -> int:
    if not has_app_context():
        return cache_service.CATALOG_TTL
    return int(current_app.config.get("WORKFLOW_CATALOG_CACHE_TTL", cache_service.CATALOG_TTL))


# ═════════════════════════════════════════════════════════════════════════════
# Loading
# ═════════════════════════════════════════════════════════════════════════════


def _query_step_rows(entity_type: str) -> list[WorkflowStep]:
    return db.session.execute(
        select(WorkflowStep)
        .where(WorkflowStep.entity_type == entity_type)
        .order_by(WorkflowStep.step_order, WorkflowStep.step_key)
    ).scalars().all()


def load_catalog(entity_type: str) -> StepCatalog:
    """
    Return the StepCatalog of *entity_type* (cache-aside, WORKFLOW_CATALOG_CACHE_TTL).

    Inconsistent catalogs are logged once per cache fill. With
    WORKFLOW_STRICT_CATALOG enabled they raise WorkflowConfigurationError
    instead; otherwise steps behind an unknown prerequisite stay blocked.
    """
    validate_entity_type(entity_type)

    def _loader():
        definitions = [StepDefinition.from_row(r) for r in _query_step_rows(entity_type)]
        problems = validate_catalog(definitions)
        if problems:
            logger.warning(
                "Workflow catalog %s has %d problem(s): %s",
                entity_type, len(problems), "; ".join(p["detail"] for p in problems),
            )
            if _strict_mode():
                raise WorkflowConfigurationError(
                    f"Workflow catalog for {entity_type} is inconsistent",
                    details={"problems": problems},
                )
        return [d.to_dict() for d in definitions]

    data = cache_service.get_cached(
        cache_service.steps_key(entity_type),
        ttl=_catalog_ttl(),
        loader=_loader,
    )
    return StepCatalog(
        entity_type=entity_type,
        steps=tuple(StepDefinition.from_dict(d) for d in data or []),
    )


def get_step_or_404(step_id: int) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if not step:
        raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
    return step


def catalog_report(entity_type: str) -> dict:
    """Validation report for the admin UI, read straight from the database."""
    validate_entity_type(entity_type)
    definitions = [StepDefinition.from_row(r) for r in _query_step_rows(entity_type)]
    problems = validate_catalog(definitions)
    return {
        "entity_type": entity_type,
        "total_steps": len(definitions),
        "valid": not problems,
        "problems": problems,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Maintenance
# ═════════════════════════════════════════════════════════════════════════════


def _clean_keys(values, field: str) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{field} must be a list", details={field: "Expected a list of strings"})
    cleaned = []
    for v in values:
        if not isinstance(v, str) or not v.strip():
            raise ValidationError(f"{field} must contain non-empty strings", details={field: repr(v)})
        if v.strip() not in cleaned:
            cleaned.append(v.strip())
    return cleaned


def _assert_consistent(entity_type: str, definitions) -> None:
    problems = validate_catalog(definitions)
    if problems:
        raise WorkflowConfigurationError(
            f"Change would make the {entity_type} catalog inconsistent: {problems[0]['detail']}",
            details={"problems": problems},
        )


def create_step(data: dict) -> WorkflowStep:
    """
    Add a step to a catalog.

    Required keys: entity_type, step_key, step_name. step_order defaults to the
    current maximum + 10. Prerequisites must already exist in the same catalog.
    """
    entity_type = validate_entity_type(data.get("entity_type"))
    step_key = (data.get("step_key") or "").strip()
    step_name = (data.get("step_name") or "").strip()
    if not step_key or not step_name:
        raise ValidationError(
            "step_key and step_name are required",
            details={k: "required" for k, v in (("step_key", step_key), ("step_name", step_name)) if not v},
        )

    existing = _query_step_rows(entity_type)
    if any(r.step_key == step_key for r in existing):
        raise ConflictError(resource="WorkflowStep", field="step_key", value=step_key)

    step_order = data.get("step_order")
    if step_order is None:
        max_order = db.session.execute(
            select(func.max(WorkflowStep.step_order)).where(WorkflowStep.entity_type == entity_type)
        ).scalar()
        step_order = (max_order or 0) + 10

    step = WorkflowStep(
        entity_type=entity_type,
        step_key=step_key,
        step_name=step_name,
        step_name_cn=data.get("step_name_cn"),
        step_order=int(step_order),
        is_required=parse_bool(data.get("is_required"), default=True),
        can_skip=parse_bool(data.get("can_skip"), default=False),
        auto_complete=parse_bool(data.get("auto_complete"), default=False),
        blocked_by_steps=_clean_keys(data.get("blocked_by_steps"), "blocked_by_steps"),
        responsible_roles=_clean_keys(data.get("responsible_roles"), "responsible_roles"),
    )
    _assert_consistent(
        entity_type,
        [StepDefinition.from_row(r) for r in existing] + [StepDefinition.from_row(step)],
    )

    db.session.add(step)
    db_commit_or_raise(f"workflow step {entity_type}:{step_key}")
    cache_service.invalidate_steps(entity_type)
    logger.info("Workflow step created: %s:%s (order=%s)", entity_type, step_key, step.step_order)
    return step


def update_step(step_id: int, data: dict) -> WorkflowStep:
    """Update the mutable fields of a step; the resulting catalog must stay consistent."""
    step = get_step_or_404(step_id)
    for f in ("entity_type", "step_key"):
        if f in data and data[f] != getattr(step, f):
            raise ValidationError(f"{f} cannot be changed", details={f: "immutable"})

    changes = {}
    for f in UPDATABLE_FIELDS:
        if f not in data:
            continue
        val = data[f]
        if f in _BOOL_FIELDS:
            val = parse_bool(val, default=getattr(step, f))
        elif f in _LIST_FIELDS:
            val = _clean_keys(val, f)
        elif f == "step_order":
            try:
                val = int(val)
            except (TypeError, ValueError) as exc:
                raise ValidationError("step_order must be an integer", details={f: repr(val)}) from exc
        elif f == "step_name":
            val = (val or "").strip()
            if not val:
                raise ValidationError("step_name cannot be empty", details={f: "required"})
        changes[f] = val

    if "blocked_by_steps" in changes:
        others = [StepDefinition.from_row(r) for r in _query_step_rows(step.entity_type) if r.id != step.id]
        candidate = replace(
            StepDefinition.from_row(step), blocked_by_steps=tuple(changes["blocked_by_steps"]),
        )
        _assert_consistent(step.entity_type, others + [candidate])

    for f, val in changes.items():
        setattr(step, f, val)
    db_commit_or_raise(f"workflow step {step.entity_type}:{step.step_key}")
    cache_service.invalidate_steps(step.entity_type)
    logger.info("Workflow step updated: %s:%s fields=%s", step.entity_type, step.step_key, sorted(changes))
    return step


def delete_step(step_id: int) -> None:
    """
    Remove a step from its catalog.

    Refused while other steps list it as a prerequisite. Progress rows for the
    key are kept; the composer ignores keys that are no longer in the catalog.
    """
    step = get_step_or_404(step_id)
    dependents = [
        r.step_key for r in _query_step_rows(step.entity_type)
        if r.id != step.id and step.step_key in (r.blocked_by_steps or [])
    ]
    if dependents:
        raise ValidationError(
            f"Step {step.step_key!r} is a prerequisite of other steps",
            details={"dependents": dependents},
        )
    entity_type, step_key = step.entity_type, step.step_key
    db.session.delete(step)
    db_commit_or_raise(f"delete workflow step {entity_type}:{step_key}")
    cache_service.invalidate_steps(entity_type)
    logger.info("Workflow step deleted: %s:%s", entity_type, step_key)


def seed_catalog(entity_type: str | None = None) -> list[WorkflowStep]:
    """Insert missing default steps (one entity type or all); returns created rows."""
    if entity_type is not None:
        validate_entity_type(entity_type)
    created = seed_default_steps(entity_type)
    db_commit_or_raise("default workflow catalog")
    cache_service.invalidate_steps(entity_type)
    logger.info("Seeded %d default workflow step(s) for %s", len(created), entity_type or "all entity types")
    return created
