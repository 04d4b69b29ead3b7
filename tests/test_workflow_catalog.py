"""
tests/test_workflow_catalog.py — Step catalog loading, validation and maintenance.

Covers:
    1.  Catalog snapshot ordering and lookup
    2.  Cycle detection on prerequisite graphs
    3.  validate_catalog: duplicates, self references, unknown keys, cycles
    4.  Inconsistent stored catalog: tolerated with a warning, rejected in strict mode
    5.  Catalog cache is reused until a catalog write invalidates it
    6.  create_step: defaults, duplicate key, unknown prerequisite, bad entity type
    7.  update_step: cycle rejected, immutable keys, field changes
    8.  delete_step: refused while referenced
    9.  Default catalogs: seeding is idempotent and every catalog is consistent
"""

import logging

import pytest

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.models import db
from app.models.workflow import DEFAULT_STEPS, ENTITY_TYPES, WorkflowStep, find_cycle
from app.services import workflow_catalog as svc
from app.services.workflow_engine import StepDefinition


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def _make_step(step_key, step_order, entity_type="order", **kw):
    step = WorkflowStep(
        entity_type=entity_type,
        step_key=step_key,
        step_name=kw.pop("step_name", step_key),
        step_order=step_order,
        blocked_by_steps=kw.pop("blocked_by_steps", []),
        responsible_roles=kw.pop("responsible_roles", []),
        **kw,
    )
    db.session.add(step)
    db.session.commit()
    return step


def _defn(key, blocked_by=()):
    return StepDefinition(
        entity_type="order", step_key=key, step_name=key, step_order=0,
        blocked_by_steps=tuple(blocked_by),
    )


# ═════════════════════════════════════════════════════════════════════════════
# 1. Snapshot
# ═════════════════════════════════════════════════════════════════════════════


class TestLoadCatalog:
    def test_ordered_snapshot(self, abc_steps):
        _make_step("step_0", 0)
        catalog = svc.load_catalog("order")
        assert catalog.keys == ("step_0", "step_a", "step_b", "step_c")
        assert len(catalog) == 4
        assert "step_b" in catalog
        assert "missing" not in catalog
        assert catalog.get("step_b").blocked_by_steps == ("step_a",)
        assert catalog.get("missing") is None

    def test_catalogs_are_per_entity_type(self, abc_steps):
        _make_step("po_created", 10, entity_type="purchase_order")
        assert svc.load_catalog("purchase_order").keys == ("po_created",)
        assert len(svc.load_catalog("sourcing")) == 0

    def test_unsupported_entity_type(self):
        with pytest.raises(ValidationError):
            svc.load_catalog("invoice")

    def test_cache_reused_until_write(self, abc_steps):
        assert len(svc.load_catalog("order")) == 3
        _make_step("sneaky", 99)              # direct insert, no invalidation
        assert len(svc.load_catalog("order")) == 3
        svc.create_step({"entity_type": "order", "step_key": "step_d", "step_name": "D", "step_order": 50})
        assert svc.load_catalog("order").keys[-2:] == ("step_d", "sneaky")


# ═════════════════════════════════════════════════════════════════════════════
# 2-3. Validation
# ═════════════════════════════════════════════════════════════════════════════


class TestFindCycle:
    def test_acyclic(self):
        assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None

    def test_diamond_is_not_a_cycle(self):
        assert find_cycle({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}) is None

    def test_two_node_cycle(self):
        cycle = find_cycle({"a": ["b"], "b": ["a"]})
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}

    def test_long_chain_cycle(self):
        graph = {f"s{i}": [f"s{i - 1}"] for i in range(1, 200)}
        graph["s0"] = ["s199"]
        cycle = find_cycle(graph)
        assert cycle is not None
        assert len(cycle) == 201

    def test_unknown_keys_are_leaves(self):
        assert find_cycle({"a": ["ghost"]}) is None


class TestValidateCatalog:
    def test_consistent(self):
        assert svc.validate_catalog([_defn("a"), _defn("b", ["a"])]) == []

    def test_problems(self):
        problems = svc.validate_catalog([
            _defn("a", ["c"]),
            _defn("b", ["b"]),
            _defn("c", ["a", "ghost"]),
            _defn("b"),
        ])
        kinds = sorted(p["problem"] for p in problems)
        assert kinds == ["cycle", "duplicate_key", "self_reference", "unknown_prerequisite"]
        unknown = next(p for p in problems if p["problem"] == "unknown_prerequisite")
        assert unknown["step_key"] == "c"
        assert "ghost" in unknown["detail"]

    def test_catalog_report(self, abc_steps):
        _make_step("orphan", 9, blocked_by_steps=["ghost"])
        report = svc.catalog_report("order")
        assert report["total_steps"] == 4
        assert report["valid"] is False
        assert [p["problem"] for p in report["problems"]] == ["unknown_prerequisite"]


# ═════════════════════════════════════════════════════════════════════════════
# 4. Inconsistent stored catalogs
# ═════════════════════════════════════════════════════════════════════════════


class TestStoredInconsistency:
    def test_tolerated_with_warning(self, caplog):
        _make_step("a", 1)
        _make_step("b", 2, blocked_by_steps=["ghost"])
        with caplog.at_level(logging.WARNING, logger="app.services.workflow_catalog"):
            catalog = svc.load_catalog("order")
        assert catalog.keys == ("a", "b")
        assert "ghost" in caplog.text

    def test_strict_mode_raises(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "WORKFLOW_STRICT_CATALOG", True)
        _make_step("a", 1, blocked_by_steps=["ghost"])
        with pytest.raises(WorkflowConfigurationError) as exc:
            svc.load_catalog("order")
        assert exc.value.details["problems"][0]["problem"] == "unknown_prerequisite"


# ═════════════════════════════════════════════════════════════════════════════
# 6-8. Maintenance
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateStep:
    def test_defaults(self, abc_steps):
        step = svc.create_step({
            "entity_type": "order", "step_key": "step_d", "step_name": "Step D",
            "blocked_by_steps": ["step_c", "step_c"], "can_skip": "true",
        })
        assert step.id is not None
        assert step.step_order == 13
        assert step.blocked_by_steps == ["step_c"]
        assert step.can_skip is True
        assert step.is_required is True

    def test_first_step_of_empty_catalog(self):
        step = svc.create_step({"entity_type": "sourcing", "step_key": "lead", "step_name": "Lead"})
        assert step.step_order == 10

    def test_duplicate_key(self, abc_steps):
        with pytest.raises(ConflictError):
            svc.create_step({"entity_type": "order", "step_key": "step_a", "step_name": "Again"})

    def test_same_key_other_entity_type_allowed(self, abc_steps):
        step = svc.create_step({"entity_type": "purchase_order", "step_key": "step_a", "step_name": "A"})
        assert step.entity_type == "purchase_order"

    def test_unknown_prerequisite_rejected(self, abc_steps):
        with pytest.raises(WorkflowConfigurationError) as exc:
            svc.create_step({
                "entity_type": "order", "step_key": "step_d", "step_name": "D",
                "blocked_by_steps": ["nope"],
            })
        assert exc.value.details["problems"][0]["problem"] == "unknown_prerequisite"
        assert WorkflowStep.query.filter_by(step_key="step_d").first() is None

    def test_cross_entity_prerequisite_rejected(self, abc_steps):
        with pytest.raises(WorkflowConfigurationError):
            svc.create_step({
                "entity_type": "purchase_order", "step_key": "x", "step_name": "X",
                "blocked_by_steps": ["step_a"],
            })

    @pytest.mark.parametrize("payload", [
        {"entity_type": "invoice", "step_key": "x", "step_name": "X"},
        {"entity_type": "order", "step_key": "", "step_name": "X"},
        {"entity_type": "order", "step_key": "x"},
        {"entity_type": "order", "step_key": "x", "step_name": "X", "blocked_by_steps": "step_a"},
    ])
    def test_invalid_payload(self, payload):
        with pytest.raises(ValidationError):
            svc.create_step(payload)


class TestUpdateStep:
    def test_fields_updated(self, abc_steps):
        step = svc.update_step(abc_steps[2].id, {"step_name": "Final", "can_skip": False, "step_order": 30})
        assert step.step_name == "Final"
        assert step.can_skip is False
        assert step.step_order == 30

    def test_cycle_rejected(self, abc_steps):
        with pytest.raises(WorkflowConfigurationError) as exc:
            svc.update_step(abc_steps[0].id, {"blocked_by_steps": ["step_c"]})
        assert any(p["problem"] == "cycle" for p in exc.value.details["problems"])
        assert db.session.get(WorkflowStep, abc_steps[0].id).blocked_by_steps == []

    def test_self_reference_rejected(self, abc_steps):
        with pytest.raises(WorkflowConfigurationError):
            svc.update_step(abc_steps[0].id, {"blocked_by_steps": ["step_a"]})

    def test_step_key_immutable(self, abc_steps):
        with pytest.raises(ValidationError):
            svc.update_step(abc_steps[0].id, {"step_key": "renamed"})

    def test_bad_order(self, abc_steps):
        with pytest.raises(ValidationError):
            svc.update_step(abc_steps[0].id, {"step_order": "first"})

    def test_missing_step(self):
        with pytest.raises(NotFoundError):
            svc.update_step(999, {"step_name": "X"})

    def test_update_invalidates_cache(self, abc_steps):
        assert svc.load_catalog("order").get("step_b").blocked_by_steps == ("step_a",)
        svc.update_step(abc_steps[1].id, {"blocked_by_steps": []})
        assert svc.load_catalog("order").get("step_b").blocked_by_steps == ()


class TestDeleteStep:
    def test_referenced_step_refused(self, abc_steps):
        with pytest.raises(ValidationError) as exc:
            svc.delete_step(abc_steps[1].id)
        assert exc.value.details["dependents"] == ["step_c"]

    def test_leaf_step_deleted(self, abc_steps):
        svc.delete_step(abc_steps[2].id)
        assert svc.load_catalog("order").keys == ("step_a", "step_b")


# ═════════════════════════════════════════════════════════════════════════════
# 9. Default catalogs
# ═════════════════════════════════════════════════════════════════════════════


class TestDefaultCatalogs:
    def test_seed_is_idempotent(self):
        created = svc.seed_catalog()
        assert len(created) == sum(len(v) for v in DEFAULT_STEPS.values())
        assert svc.seed_catalog() == []

    def test_seed_single_type(self):
        created = svc.seed_catalog("sourcing")
        assert {s.entity_type for s in created} == {"sourcing"}
        assert svc.load_catalog("sourcing").keys[0] == "lead_created"

    def test_seed_fills_gaps_only(self):
        _make_step("order_confirmed", 5, step_name="Custom confirmation")
        created = svc.seed_catalog("order")
        assert "order_confirmed" not in {s.step_key for s in created}
        assert svc.load_catalog("order").get("order_confirmed").step_name == "Custom confirmation"

    @pytest.mark.parametrize("entity_type", ENTITY_TYPES)
    def test_default_catalogs_are_consistent(self, seeded, entity_type):
        report = svc.catalog_report(entity_type)
        assert report["valid"], report["problems"]
        assert report["total_steps"] == len(DEFAULT_STEPS[entity_type])
