"""
Workflow Composer — pure derivation of the progress view.

Joins the step catalog of one entity type with the progress rows of one
entity instance and computes, per step, whether it is blocked by unfinished
prerequisites, plus the summary figures shown on detail pages and list
badges (completed/total, percentage, current actionable step).

Nothing here touches the database: callers pass in catalog definitions and
progress rows, so the whole module is testable without an app context.

Usage:
    from app.services.workflow_engine import compose_workflow
    view = compose_workflow("order", "42", catalog.steps, progress_rows)
    view.progress_percentage, view.current_step
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Union

from app.models.workflow import is_finished
from app.services.workflow_phases import DEFAULT_CLASSIFIER, PhaseClassifier


# ═════════════════════════════════════════════════════════════════════════════
# Catalog + progress value types
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepDefinition:
    """Immutable snapshot of one catalog step."""
    entity_type: str
    step_key: str
    step_name: str
    step_order: int
    step_name_cn: str | None = None
    is_required: bool = True
    can_skip: bool = False
    auto_complete: bool = False
    blocked_by_steps: tuple[str, ...] = ()
    responsible_roles: tuple[str, ...] = ()
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "StepDefinition":
        """Build from a WorkflowStep model (or any object with the same attributes)."""
        return cls(
            id=getattr(row, "id", None),
            entity_type=row.entity_type,
            step_key=row.step_key,
            step_name=row.step_name,
            step_name_cn=getattr(row, "step_name_cn", None),
            step_order=row.step_order or 0,
            is_required=bool(getattr(row, "is_required", True)),
            can_skip=bool(getattr(row, "can_skip", False)),
            auto_complete=bool(getattr(row, "auto_complete", False)),
            blocked_by_steps=tuple(getattr(row, "blocked_by_steps", None) or ()),
            responsible_roles=tuple(getattr(row, "responsible_roles", None) or ()),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "StepDefinition":
        """Inverse of to_dict() — used when reading the catalog back from cache."""
        return cls(
            id=data.get("id"),
            entity_type=data["entity_type"],
            step_key=data["step_key"],
            step_name=data["step_name"],
            step_name_cn=data.get("step_name_cn"),
            step_order=data.get("step_order") or 0,
            is_required=bool(data.get("is_required", True)),
            can_skip=bool(data.get("can_skip", False)),
            auto_complete=bool(data.get("auto_complete", False)),
            blocked_by_steps=tuple(data.get("blocked_by_steps") or ()),
            responsible_roles=tuple(data.get("responsible_roles") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "step_key": self.step_key,
            "step_name": self.step_name,
            "step_name_cn": self.step_name_cn,
            "step_order": self.step_order,
            "is_required": self.is_required,
            "can_skip": self.can_skip,
            "auto_complete": self.auto_complete,
            "blocked_by_steps": list(self.blocked_by_steps),
            "responsible_roles": list(self.responsible_roles),
        }


@dataclass(frozen=True)
class NoProgress:
    """No progress row exists yet — the step is implicitly pending."""
    status: str = field(default="pending", init=False)

    def to_dict(self) -> None:
        return None


@dataclass(frozen=True)
class RecordedProgress:
    """A persisted progress row for one step of one entity."""
    step_key: str
    status: str
    completed_at: datetime | None = None
    completed_by: str | None = None
    notes: str | None = None
    assigned_to: tuple[str, ...] = ()
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "RecordedProgress":
        return cls(
            id=getattr(row, "id", None),
            step_key=row.step_key,
            status=row.status or "pending",
            completed_at=getattr(row, "completed_at", None),
            completed_by=getattr(row, "completed_by", None),
            notes=getattr(row, "notes", None),
            assigned_to=tuple(getattr(row, "assigned_to", None) or ()),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "RecordedProgress":
        completed_at = data.get("completed_at")
        if isinstance(completed_at, str):
            completed_at = datetime.fromisoformat(completed_at)
        return cls(
            id=data.get("id"),
            step_key=data["step_key"],
            status=data.get("status") or "pending",
            completed_at=completed_at,
            completed_by=data.get("completed_by"),
            notes=data.get("notes"),
            assigned_to=tuple(data.get("assigned_to") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_key": self.step_key,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "notes": self.notes,
            "assigned_to": list(self.assigned_to),
        }


Progress = Union[NoProgress, RecordedProgress]

NO_PROGRESS = NoProgress()


# ═════════════════════════════════════════════════════════════════════════════
# Derived view
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepView:
    """A catalog step joined with its progress and blocking state."""
    definition: StepDefinition
    progress: Progress
    is_blocked: bool
    blocked_by_steps: tuple[str, ...]
    phase: str

    @property
    def step_key(self) -> str:
        return self.definition.step_key

    @property
    def step_name(self) -> str:
        return self.definition.step_name

    @property
    def status(self) -> str:
        return self.progress.status

    @property
    def is_finished(self) -> bool:
        return is_finished(self.progress.status)

    def to_dict(self) -> dict:
        result = self.definition.to_dict()
        result["prerequisites"] = result.pop("blocked_by_steps")
        result.update({
            "status": self.status,
            "progress": self.progress.to_dict(),
            "is_blocked": self.is_blocked,
            "blocked_by_steps": list(self.blocked_by_steps),
            "phase": self.phase,
            "actions": evaluate_step_actions(self).to_dict(),
        })
        return result


@dataclass(frozen=True)
class WorkflowView:
    """Full workflow of one entity: ordered steps plus summary figures."""
    entity_type: str
    entity_id: str
    steps: tuple[StepView, ...]
    total_steps: int
    completed_steps: int
    progress_percentage: int
    current_step: StepView | None

    @property
    def is_complete(self) -> bool:
        return self.total_steps > 0 and self.completed_steps == self.total_steps

    @property
    def is_stuck(self) -> bool:
        """No actionable step left although the workflow is not finished."""
        return self.current_step is None and not self.is_complete and self.total_steps > 0

    def get_step(self, step_key: str) -> StepView | None:
        return next((s for s in self.steps if s.step_key == step_key), None)

    def summary(self) -> dict:
        cur = self.current_step
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress_percentage": self.progress_percentage,
            "current_step_key": cur.step_key if cur else None,
            "current_step_name": cur.step_name if cur else None,
            "is_complete": self.is_complete,
        }

    def to_dict(self, classifier: PhaseClassifier | None = None) -> dict:
        result = {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "steps": [s.to_dict() for s in self.steps],
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress_percentage": self.progress_percentage,
            "current_step": self.current_step.to_dict() if self.current_step else None,
            "is_complete": self.is_complete,
            "is_stuck": self.is_stuck,
        }
        if classifier is not None:
            result["phases"] = group_by_phase(self, classifier)
        return result


# ═════════════════════════════════════════════════════════════════════════════
# Composition
# ═════════════════════════════════════════════════════════════════════════════


def percentage(completed: int, total: int) -> int:
    """Whole-number completion percentage, rounded half up; 0 when total is 0."""
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def compose_workflow(
    entity_type: str,
    entity_id: str,
    steps: Iterable,
    progress_rows: Iterable,
    classifier: PhaseClassifier = DEFAULT_CLASSIFIER,
) -> WorkflowView:
    """
    Build the WorkflowView for one entity.

    Args:
        entity_type: order | purchase_order | sourcing.
        entity_id: Opaque id of the business object.
        steps: StepDefinitions (or WorkflowStep rows) of *entity_type*, any order.
        progress_rows: RecordedProgress values (or WorkflowProgress rows) of the entity.
        classifier: Phase lookup used to tag each step.

    Returns:
        WorkflowView with steps in step_order. A prerequisite key that is not in
        the catalog never counts as satisfied, so the dependent step stays blocked.
    """
    definitions = sorted(
        (s if isinstance(s, StepDefinition) else StepDefinition.from_row(s) for s in steps),
        key=lambda d: (d.step_order, d.step_key),
    )
    names = {d.step_key: d.step_name for d in definitions}

    progress_by_key: dict[str, Progress] = {}
    for row in progress_rows:
        rec = row if isinstance(row, RecordedProgress) else RecordedProgress.from_row(row)
        progress_by_key[rec.step_key] = rec

    views = []
    for d in definitions:
        unsatisfied = [
            key for key in d.blocked_by_steps
            if not is_finished(progress_by_key.get(key, NO_PROGRESS).status)
        ]
        views.append(StepView(
            definition=d,
            progress=progress_by_key.get(d.step_key, NO_PROGRESS),
            is_blocked=bool(unsatisfied),
            blocked_by_steps=tuple(names[k] for k in unsatisfied if k in names),
            phase=classifier.phase_of(d.step_key),
        ))

    total = len(views)
    completed = sum(1 for v in views if v.is_finished)
    current = next((v for v in views if not v.is_blocked and not v.is_finished), None)

    return WorkflowView(
        entity_type=entity_type,
        entity_id=str(entity_id),
        steps=tuple(views),
        total_steps=total,
        completed_steps=completed,
        progress_percentage=percentage(completed, total),
        current_step=current,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Phase grouping + action guards
# ═════════════════════════════════════════════════════════════════════════════


def group_by_phase(view: WorkflowView, classifier: PhaseClassifier = DEFAULT_CLASSIFIER) -> list[dict]:
    """Return the view's steps grouped per phase, in phase display order."""
    groups = []
    for phase, steps in classifier.group(view.steps):
        done = sum(1 for s in steps if s.is_finished)
        groups.append({
            **phase.to_dict(),
            "step_keys": [s.step_key for s in steps],
            "completed_steps": done,
            "total_steps": len(steps),
            "all_complete": done == len(steps),
        })
    return groups


@dataclass(frozen=True)
class StepActions:
    """Which user actions the step currently allows."""
    can_complete: bool
    can_skip: bool
    can_reset: bool
    can_start: bool

    def to_dict(self) -> dict:
        return {
            "can_complete": self.can_complete,
            "can_skip": self.can_skip,
            "can_reset": self.can_reset,
            "can_start": self.can_start,
        }


def evaluate_step_actions(step: StepView) -> StepActions:
    """Derive the allowed actions for *step* from its blocking and status."""
    open_ = not step.is_blocked and not step.is_finished
    return StepActions(
        can_complete=open_,
        can_skip=open_ and step.definition.can_skip,
        can_reset=step.is_finished,
        can_start=open_ and step.status == "pending",
    )
