"""
Workflow Phase Classifier.

Maps step keys to the business phase they belong to. Phases exist purely for
display grouping — nothing in the engine depends on them.

Usage:
    from app.services.workflow_phases import DEFAULT_CLASSIFIER
    DEFAULT_CLASSIFIER.phase_of("production_50")   # -> "production"
    DEFAULT_CLASSIFIER.phase_of("unknown_step")    # -> "sales"
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class Phase:
    """Display metadata for one business phase."""
    key: str
    label: str
    label_cn: str
    color: str

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "label_cn": self.label_cn,
            "color": self.color,
        }


# Display order is the tuple order
WORKFLOW_PHASES: tuple[Phase, ...] = (
    Phase("marketing", "Marketing", "市场", "purple"),
    Phase("sales", "Sales", "销售", "blue"),
    Phase("sourcing", "Sourcing", "采购", "cyan"),
    Phase("production", "Production", "生产", "amber"),
    Phase("qc", "QC", "质检", "orange"),
    Phase("logistics", "Logistics", "物流", "green"),
    Phase("finance", "Finance", "财务", "emerald"),
)

DEFAULT_PHASE = "sales"

STEP_PHASE_MAP: Mapping[str, str] = MappingProxyType({
    "lead_created": "marketing",
    "lead_qualified": "marketing",
    "sourcing_started": "sourcing",
    "sourcing_completed": "sourcing",
    "quotation_sent": "sales",
    "quotation_approved": "sales",
    "order_confirmed": "sales",
    "customer_deposit_collected": "finance",
    "po_created": "sourcing",
    "po_signed": "sourcing",
    "factory_deposit_paid": "finance",
    "production_started": "production",
    "production_50": "production",
    "production_completed": "production",
    "qc_scheduled": "qc",
    "qc_completed": "qc",
    "customer_balance_collected": "finance",
    "factory_balance_paid": "finance",
    "shipment_created": "logistics",
    "shipped": "logistics",
    "delivered": "logistics",
    "invoice_sent": "finance",
    "order_closed": "finance",
})


class PhaseClassifier:
    """Immutable step_key → phase lookup with a fallback phase."""

    def __init__(
        self,
        mapping: Mapping[str, str],
        phases: tuple[Phase, ...] = WORKFLOW_PHASES,
        default: str = DEFAULT_PHASE,
    ) -> None:
        known = {p.key for p in phases}
        unknown = sorted({v for v in mapping.values() if v not in known} | ({default} - known))
        if unknown:
            raise ValueError(f"Unknown phase(s) in classifier table: {', '.join(unknown)}")
        self._mapping = MappingProxyType(dict(mapping))
        self._phases = tuple(phases)
        self._default = default

    @property
    def phases(self) -> tuple[Phase, ...]:
        return self._phases

    @property
    def mapping(self) -> Mapping[str, str]:
        return self._mapping

    def phase_of(self, step_key: str) -> str:
        return self._mapping.get(step_key, self._default)

    def get_phase(self, key: str) -> Phase | None:
        return next((p for p in self._phases if p.key == key), None)

    def group(self, items, key=lambda item: item.step_key) -> list[tuple[Phase, list]]:
        """Group *items* by phase, phases in display order, empty phases omitted.

        Items keep their incoming order within a phase.
        """
        buckets: dict[str, list] = {}
        for item in items:
            buckets.setdefault(self.phase_of(key(item)), []).append(item)
        return [(p, buckets[p.key]) for p in self._phases if p.key in buckets]

    def to_dict(self) -> dict:
        return {
            "phases": [p.to_dict() for p in self._phases],
            "step_phase_map": dict(self._mapping),
            "default_phase": self._default,
        }


DEFAULT_CLASSIFIER = PhaseClassifier(STEP_PHASE_MAP)


def get_step_phase(step_key: str) -> str:
    """Return the phase tag for *step_key* using the default table."""
    return DEFAULT_CLASSIFIER.phase_of(step_key)
