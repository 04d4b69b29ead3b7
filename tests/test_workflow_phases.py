"""
tests/test_workflow_phases.py — Phase classifier.

Covers:
    1. Every known step key maps to its phase
    2. Unknown keys fall back to "sales"
    3. Grouping keeps phase display order and item order, omits empty phases
    4. Classifier tables are validated and read-only
    5. GET /api/v1/workflow/phases exposes the table
"""

import pytest

from app.services.workflow_phases import (
    DEFAULT_CLASSIFIER,
    STEP_PHASE_MAP,
    WORKFLOW_PHASES,
    Phase,
    PhaseClassifier,
    get_step_phase,
)


class TestPhaseLookup:
    @pytest.mark.parametrize("step_key,phase", [
        ("lead_created", "marketing"),
        ("quotation_approved", "sales"),
        ("po_signed", "sourcing"),
        ("production_50", "production"),
        ("qc_completed", "qc"),
        ("shipped", "logistics"),
        ("factory_deposit_paid", "finance"),
        ("order_closed", "finance"),
    ])
    def test_known_keys(self, step_key, phase):
        assert get_step_phase(step_key) == phase

    def test_unknown_key_defaults_to_sales(self):
        assert get_step_phase("totally_new_step") == "sales"
        assert DEFAULT_CLASSIFIER.phase_of("") == "sales"

    def test_all_mapped_phases_exist(self):
        keys = {p.key for p in WORKFLOW_PHASES}
        assert set(STEP_PHASE_MAP.values()) <= keys

    def test_get_phase(self):
        qc = DEFAULT_CLASSIFIER.get_phase("qc")
        assert qc.label == "QC"
        assert qc.label_cn == "质检"
        assert DEFAULT_CLASSIFIER.get_phase("nope") is None


class TestGrouping:
    def test_group_order_and_membership(self):
        keys = ["shipped", "order_confirmed", "po_created", "mystery", "quotation_sent"]
        groups = DEFAULT_CLASSIFIER.group(keys, key=lambda k: k)
        assert [(p.key, items) for p, items in groups] == [
            ("sales", ["order_confirmed", "mystery", "quotation_sent"]),
            ("sourcing", ["po_created"]),
            ("logistics", ["shipped"]),
        ]

    def test_empty_input(self):
        assert DEFAULT_CLASSIFIER.group([], key=lambda k: k) == []


class TestClassifierTable:
    def test_rejects_unknown_phase(self):
        with pytest.raises(ValueError, match="warehouse"):
            PhaseClassifier({"x": "warehouse"})

    def test_rejects_unknown_default(self):
        with pytest.raises(ValueError):
            PhaseClassifier({}, default="nowhere")

    def test_custom_phases(self):
        phases = (Phase("a", "A", "甲", "red"), Phase("b", "B", "乙", "blue"))
        clf = PhaseClassifier({"s1": "b"}, phases=phases, default="a")
        assert clf.phase_of("s1") == "b"
        assert clf.phase_of("s2") == "a"

    def test_mapping_is_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_CLASSIFIER.mapping["lead_created"] = "sales"

    def test_to_dict(self):
        data = DEFAULT_CLASSIFIER.to_dict()
        assert [p["key"] for p in data["phases"]] == [
            "marketing", "sales", "sourcing", "production", "qc", "logistics", "finance",
        ]
        assert data["step_phase_map"]["po_signed"] == "sourcing"
        assert data["default_phase"] == "sales"


def test_phases_endpoint(client):
    res = client.get("/api/v1/workflow/phases")
    assert res.status_code == 200
    body = res.get_json()
    assert body["default_phase"] == "sales"
    assert len(body["phases"]) == 7
    assert body["step_phase_map"]["production_started"] == "production"
