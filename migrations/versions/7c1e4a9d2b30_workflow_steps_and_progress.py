"""workflow_steps_and_progress

Creates the workflow tables:
  - workflow_steps     — step catalog per entity type (order, purchase_order, sourcing)
  - workflow_progress  — status of one step on one concrete entity

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e4a9d2b30
Revises:
Create Date: 2026-10-19 09:12:41.318204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e4a9d2b30'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── WorkflowStep ──────────────────────────────────────────────────────
    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column(
                "entity_type", sa.String(length=30), nullable=False,
                comment="order | purchase_order | sourcing",
            ),
            sa.Column("step_key", sa.String(length=60), nullable=False),
            sa.Column("step_name", sa.String(length=200), nullable=False),
            sa.Column(
                "step_name_cn", sa.String(length=200), nullable=True,
                comment="Localized (Chinese) display name",
            ),
            sa.Column("step_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("can_skip", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(
                "auto_complete", sa.Boolean(), nullable=False, server_default=sa.false(),
                comment="Advisory — no automation acts on this flag",
            ),
            sa.Column(
                "blocked_by_steps", sa.JSON(), nullable=False,
                comment="step_keys of the same entity_type that must be completed/skipped first",
            ),
            sa.Column(
                "responsible_roles", sa.JSON(), nullable=False,
                comment="Advisory role identifiers (manager, sales, sourcing, qc, ...)",
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_type", "step_key", name="uq_workflow_step_key"),
            sa.CheckConstraint(
                "entity_type IN ('order','purchase_order','sourcing')",
                name="ck_workflow_step_entity_type",
            ),
        )
        op.create_index("ix_workflow_steps_entity_type", "workflow_steps", ["entity_type"])
        op.create_index("ix_workflow_steps_type_order", "workflow_steps", ["entity_type", "step_order"])

    # ── WorkflowProgress ──────────────────────────────────────────────────
    if "workflow_progress" not in existing:
        op.create_table(
            "workflow_progress",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column(
                "entity_id", sa.String(length=64), nullable=False,
                comment="Opaque id of the owning business object — not validated here",
            ),
            sa.Column("step_key", sa.String(length=60), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="pending",
                comment="pending | in_progress | completed | skipped",
            ),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("assigned_to", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "entity_type", "entity_id", "step_key",
                name="uq_workflow_progress_entity_step",
            ),
            sa.CheckConstraint(
                "status IN ('pending','in_progress','completed','skipped')",
                name="ck_workflow_progress_status",
            ),
        )
        op.create_index("ix_workflow_progress_entity", "workflow_progress", ["entity_type", "entity_id"])


def downgrade():
    op.drop_index("ix_workflow_progress_entity", table_name="workflow_progress")
    op.drop_table("workflow_progress")
    op.drop_index("ix_workflow_steps_type_order", table_name="workflow_steps")
    op.drop_index("ix_workflow_steps_entity_type", table_name="workflow_steps")
    op.drop_table("workflow_steps")
