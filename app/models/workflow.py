"""
Trade Ops Workflow Service
Workflow domain models — step catalog + per-entity progress trail.

Models:
    - WorkflowStep:      catalog entry, one ordered milestone of an entity type
    - WorkflowProgress:  status record of one step on one concrete entity

Architecture:
    WorkflowStep (entity_type, step_key) ──N:M──▶ WorkflowStep  (via blocked_by_steps keys)
    WorkflowProgress (entity_type, entity_id, step_key) ──N:1──▶ WorkflowStep  (by key, no FK)

Lifecycle states:
    WorkflowProgress:   pending → in_progress → completed | skipped  →(reset)→ pending
                        (no row at all is read as pending)
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_TYPES = ("order", "purchase_order", "sourcing")

PROGRESS_STATUSES = ("pending", "in_progress", "completed", "skipped")

# Statuses that satisfy a prerequisite and count toward completion
FINISHED_STATUSES = frozenset({"completed", "skipped"})


def is_finished(status):
    """Return True if *status* counts as done (completed or skipped)."""
    return status in FINISHED_STATUSES


# ── Cycle Detection ──────────────────────────────────────────────────────────


def find_cycle(prerequisites):
    """
    Return one cycle in a prerequisite graph as a list of keys, or None.

    *prerequisites* maps step_key → iterable of prerequisite step_keys.
    Keys referenced but not present in the mapping are treated as leaves.
    Uses iterative DFS with an explicit path so deep catalogs do not hit
    the recursion limit.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {key: WHITE for key in prerequisites}

    for root in sorted(prerequisites):
        if color[root] != WHITE:
            continue
        path = [root]
        stack = [iter(sorted(prerequisites[root] or ()))]
        color[root] = GREY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(sorted(prerequisites[nxt] or ())))
    return None


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkflowStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowStep(db.Model):
    """
    One milestone in the catalog of an entity type.
    The catalog changes rarely (seeded at deploy time, edited by admins).
    """

    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(
        db.String(30), nullable=False, index=True,
        comment="order | purchase_order | sourcing",
    )
    step_key = db.Column(db.String(60), nullable=False)
    step_name = db.Column(db.String(200), nullable=False)
    step_name_cn = db.Column(
        db.String(200), nullable=True,
        comment="Localized (Chinese) display name",
    )
    step_order = db.Column(db.Integer, nullable=False, default=0)

    is_required = db.Column(db.Boolean, nullable=False, default=True)
    can_skip = db.Column(db.Boolean, nullable=False, default=False)
    auto_complete = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Advisory — no automation acts on this flag",
    )

    blocked_by_steps = db.Column(
        db.JSON, nullable=False, default=list,
        comment="step_keys of the same entity_type that must be completed/skipped first",
    )
    responsible_roles = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Advisory role identifiers (manager, sales, sourcing, qc, ...)",
    )

    # Metadata
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint("entity_type", "step_key", name="uq_workflow_step_key"),
        db.CheckConstraint(
            "entity_type IN ('order','purchase_order','sourcing')",
            name="ck_workflow_step_entity_type",
        ),
        db.Index("ix_workflow_steps_type_order", "entity_type", "step_order"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "step_key": self.step_key,
            "step_name": self.step_name,
            "step_name_cn": self.step_name_cn,
            "step_order": self.step_order,
            "is_required": bool(self.is_required),
            "can_skip": bool(self.can_skip),
            "auto_complete": bool(self.auto_complete),
            "blocked_by_steps": list(self.blocked_by_steps or []),
            "responsible_roles": list(self.responsible_roles or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WorkflowStep {self.entity_type}:{self.step_key} #{self.step_order}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowProgress
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowProgress(db.Model):
    """
    Status of one catalog step on one concrete order / PO / sourcing project.
    Created on first action; reset returns it to pending instead of deleting it.
    """

    __tablename__ = "workflow_progress"

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(
        db.String(64), nullable=False,
        comment="Opaque id of the owning business object — not validated here",
    )
    step_key = db.Column(db.String(60), nullable=False)

    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | skipped",
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    assigned_to = db.Column(db.JSON, nullable=False, default=list)

    # Metadata
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint(
            "entity_type", "entity_id", "step_key",
            name="uq_workflow_progress_entity_step",
        ),
        db.CheckConstraint(
            "status IN ('pending','in_progress','completed','skipped')",
            name="ck_workflow_progress_status",
        ),
        db.Index("ix_workflow_progress_entity", "entity_type", "entity_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "step_key": self.step_key,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "notes": self.notes,
            "assigned_to": list(self.assigned_to or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (
            f"<WorkflowProgress {self.entity_type}:{self.entity_id} "
            f"{self.step_key} [{self.status}]>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# Default catalogs
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_STEPS = {
    "order": [
        {"step_key": "order_confirmed", "step_name": "Order Confirmed", "step_name_cn": "订单确认",
         "responsible_roles": ["sales"]},
        {"step_key": "customer_deposit_collected", "step_name": "Customer Deposit Collected",
         "step_name_cn": "收取客户定金", "blocked_by_steps": ["order_confirmed"],
         "responsible_roles": ["cfo", "sales"]},
        {"step_key": "po_created", "step_name": "PO Created", "step_name_cn": "创建采购单",
         "blocked_by_steps": ["order_confirmed"], "responsible_roles": ["sourcing"]},
        {"step_key": "po_signed", "step_name": "PO Signed", "step_name_cn": "采购单签署",
         "blocked_by_steps": ["po_created"], "responsible_roles": ["sourcing"]},
        {"step_key": "factory_deposit_paid", "step_name": "Factory Deposit Paid",
         "step_name_cn": "支付工厂定金", "blocked_by_steps": ["po_signed", "customer_deposit_collected"],
         "can_skip": True, "responsible_roles": ["cfo"]},
        {"step_key": "production_started", "step_name": "Production Started", "step_name_cn": "开始生产",
         "blocked_by_steps": ["factory_deposit_paid"], "responsible_roles": ["sourcing"]},
        {"step_key": "production_50", "step_name": "Production 50%", "step_name_cn": "生产过半",
         "blocked_by_steps": ["production_started"], "is_required": False, "can_skip": True,
         "responsible_roles": ["sourcing"]},
        {"step_key": "production_completed", "step_name": "Production Completed",
         "step_name_cn": "生产完成", "blocked_by_steps": ["production_started"],
         "responsible_roles": ["sourcing"]},
        {"step_key": "qc_scheduled", "step_name": "QC Scheduled", "step_name_cn": "安排质检",
         "blocked_by_steps": ["production_started"], "responsible_roles": ["qc"]},
        {"step_key": "qc_completed", "step_name": "QC Completed", "step_name_cn": "质检完成",
         "blocked_by_steps": ["qc_scheduled", "production_completed"], "responsible_roles": ["qc"]},
        {"step_key": "customer_balance_collected", "step_name": "Customer Balance Collected",
         "step_name_cn": "收取客户尾款", "blocked_by_steps": ["qc_completed"],
         "responsible_roles": ["cfo", "sales"]},
        {"step_key": "factory_balance_paid", "step_name": "Factory Balance Paid",
         "step_name_cn": "支付工厂尾款", "blocked_by_steps": ["qc_completed"],
         "responsible_roles": ["cfo"]},
        {"step_key": "shipment_created", "step_name": "Shipment Created", "step_name_cn": "创建货运",
         "blocked_by_steps": ["qc_completed"], "responsible_roles": ["logistics"]},
        {"step_key": "shipped", "step_name": "Shipped", "step_name_cn": "已发货",
         "blocked_by_steps": ["shipment_created", "customer_balance_collected"],
         "responsible_roles": ["logistics"]},
        {"step_key": "delivered", "step_name": "Delivered", "step_name_cn": "已送达",
         "blocked_by_steps": ["shipped"], "responsible_roles": ["logistics"]},
        {"step_key": "invoice_sent", "step_name": "Invoice Sent", "step_name_cn": "发送发票",
         "blocked_by_steps": ["shipped"], "responsible_roles": ["cfo"]},
        {"step_key": "order_closed", "step_name": "Order Closed", "step_name_cn": "订单关闭",
         "blocked_by_steps": ["delivered", "invoice_sent", "factory_balance_paid"],
         "responsible_roles": ["manager"]},
    ],
    "purchase_order": [
        {"step_key": "po_created", "step_name": "PO Created", "step_name_cn": "创建采购单",
         "responsible_roles": ["sourcing"]},
        {"step_key": "po_signed", "step_name": "PO Signed", "step_name_cn": "采购单签署",
         "blocked_by_steps": ["po_created"], "responsible_roles": ["sourcing"]},
        {"step_key": "factory_deposit_paid", "step_name": "Factory Deposit Paid",
         "step_name_cn": "支付工厂定金", "blocked_by_steps": ["po_signed"], "can_skip": True,
         "responsible_roles": ["cfo"]},
        {"step_key": "production_started", "step_name": "Production Started", "step_name_cn": "开始生产",
         "blocked_by_steps": ["factory_deposit_paid"], "responsible_roles": ["sourcing"]},
        {"step_key": "production_50", "step_name": "Production 50%", "step_name_cn": "生产过半",
         "blocked_by_steps": ["production_started"], "is_required": False, "can_skip": True,
         "responsible_roles": ["sourcing"]},
        {"step_key": "production_completed", "step_name": "Production Completed",
         "step_name_cn": "生产完成", "blocked_by_steps": ["production_started"],
         "responsible_roles": ["sourcing"]},
        {"step_key": "qc_scheduled", "step_name": "QC Scheduled", "step_name_cn": "安排质检",
         "blocked_by_steps": ["production_started"], "responsible_roles": ["qc"]},
        {"step_key": "qc_completed", "step_name": "QC Completed", "step_name_cn": "质检完成",
         "blocked_by_steps": ["qc_scheduled", "production_completed"], "responsible_roles": ["qc"]},
        {"step_key": "factory_balance_paid", "step_name": "Factory Balance Paid",
         "step_name_cn": "支付工厂尾款", "blocked_by_steps": ["qc_completed"],
         "responsible_roles": ["cfo"]},
        {"step_key": "shipped", "step_name": "Shipped", "step_name_cn": "已发货",
         "blocked_by_steps": ["factory_balance_paid"], "responsible_roles": ["logistics"]},
    ],
    "sourcing": [
        {"step_key": "lead_created", "step_name": "Lead Created", "step_name_cn": "创建线索",
         "responsible_roles": ["marketing", "sales"]},
        {"step_key": "lead_qualified", "step_name": "Lead Qualified", "step_name_cn": "线索确认",
         "blocked_by_steps": ["lead_created"], "can_skip": True, "responsible_roles": ["sales"]},
        {"step_key": "sourcing_started", "step_name": "Sourcing Started", "step_name_cn": "开始采购寻源",
         "blocked_by_steps": ["lead_qualified"], "responsible_roles": ["sourcing"]},
        {"step_key": "sourcing_completed", "step_name": "Sourcing Completed",
         "step_name_cn": "寻源完成", "blocked_by_steps": ["sourcing_started"],
         "responsible_roles": ["sourcing"]},
        {"step_key": "quotation_sent", "step_name": "Quotation Sent", "step_name_cn": "发送报价",
         "blocked_by_steps": ["sourcing_completed"], "responsible_roles": ["sales"]},
        {"step_key": "quotation_approved", "step_name": "Quotation Approved",
         "step_name_cn": "报价确认", "blocked_by_steps": ["quotation_sent"],
         "responsible_roles": ["sales", "manager"]},
    ],
}


def seed_default_steps(entity_type=None):
    """
    Insert the default catalog for one entity type (or all of them).
    Steps whose (entity_type, step_key) already exist are left untouched.
    Returns the list of newly created WorkflowStep rows (flushed, not committed).
    """
    types = [entity_type] if entity_type else list(ENTITY_TYPES)
    created = []
    for et in types:
        existing = {
            key for (key,) in db.session.query(WorkflowStep.step_key)
            .filter(WorkflowStep.entity_type == et)
            .all()
        }
        for order, d in enumerate(DEFAULT_STEPS.get(et, []), start=1):
            if d["step_key"] in existing:
                continue
            created.append(WorkflowStep(
                entity_type=et,
                step_order=order * 10,
                step_key=d["step_key"],
                step_name=d["step_name"],
                step_name_cn=d.get("step_name_cn"),
                is_required=d.get("is_required", True),
                can_skip=d.get("can_skip", False),
                blocked_by_steps=list(d.get("blocked_by_steps", [])),
                responsible_roles=list(d.get("responsible_roles", [])),
            ))
    db.session.add_all(created)
    db.session.flush()
    return created
