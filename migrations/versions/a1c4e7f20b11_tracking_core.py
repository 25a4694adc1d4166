"""Tracking core - entities, versions, steps, audit log

Revision ID: a1c4e7f20b11
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c4e7f20b11"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Tracked entities (risk / issue / opportunity) ──
    op.create_table(
        "tracked_entities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("org_unit_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("condition", sa.Text(), nullable=True),
        sa.Column("if_text", sa.Text(), nullable=True),
        sa.Column("then_text", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("owner", sa.String(150), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("likelihood", sa.Integer(), nullable=False),
        sa.Column("consequence", sa.Integer(), nullable=False),
        sa.Column("level", sa.String(10), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("original_likelihood", sa.Integer(), nullable=True),
        sa.Column("original_consequence", sa.Integer(), nullable=True),
        sa.Column("mitigation_strategy", sa.String(20), nullable=True),
        sa.Column("mitigation_plan", sa.Text(), nullable=True),
        sa.Column(
            "source_risk_id", sa.Integer(),
            sa.ForeignKey("tracked_entities.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("likelihood BETWEEN 1 AND 5", name="ck_tracked_likelihood_range"),
        sa.CheckConstraint("consequence BETWEEN 1 AND 5", name="ck_tracked_consequence_range"),
    )
    op.create_index("ix_tracked_entities_kind", "tracked_entities", ["kind"])
    op.create_index("ix_tracked_entities_org_unit_id", "tracked_entities", ["org_unit_id"])
    op.create_index("ix_tracked_entities_status", "tracked_entities", ["status"])
    op.create_index("ix_tracked_entities_rank", "tracked_entities", ["rank"])
    op.create_index("ix_tracked_entities_source_risk_id", "tracked_entities", ["source_risk_id"])
    op.create_index("ix_tracked_entities_kind_org", "tracked_entities", ["kind", "org_unit_id"])

    # ── Entity versions ──
    op.create_table(
        "entity_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "entity_id", sa.Integer(),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("likelihood_change_reason", sa.Text(), nullable=True),
        sa.Column("consequence_change_reason", sa.Text(), nullable=True),
        sa.Column("status_change_rationale", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entity_id", "version", name="uq_entity_version"),
    )
    op.create_index("ix_entity_versions_entity_id", "entity_versions", ["entity_id"])

    # ── Progress steps ──
    op.create_table(
        "progress_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "entity_id", sa.Integer(),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("planned_action", sa.Text(), nullable=False),
        sa.Column("closure_criteria", sa.Text(), nullable=True),
        sa.Column("estimated_start_date", sa.Date(), nullable=True),
        sa.Column("estimated_end_date", sa.Date(), nullable=True),
        sa.Column("expected_likelihood", sa.Integer(), nullable=False),
        sa.Column("expected_consequence", sa.Integer(), nullable=False),
        sa.Column("expected_rank", sa.Integer(), nullable=False),
        sa.Column("actual_likelihood", sa.Integer(), nullable=True),
        sa.Column("actual_consequence", sa.Integer(), nullable=True),
        sa.Column("actual_rank", sa.Integer(), nullable=True),
        sa.Column("actual_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_progress_steps_entity_id", "progress_steps", ["entity_id"])
    op.create_index("ix_progress_steps_entity_order", "progress_steps", ["entity_id", "sequence_order"])

    # ── Step versions ──
    op.create_table(
        "step_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "step_id", sa.Integer(),
            sa.ForeignKey("progress_steps.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("step_id", "version", name="uq_step_version"),
    )
    op.create_index("ix_step_versions_step_id", "step_versions", ["step_id"])

    # ── Audit log ──
    op.create_table(
        "tracking_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "entity_id", sa.Integer(),
            sa.ForeignKey("tracked_entities.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("target_type", sa.String(30), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
        sa.Column("diff_json", sa.Text(), server_default="{}"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_tracking_audit_entity", "tracking_audit_logs", ["entity_id"])
    op.create_index("idx_tracking_audit_target", "tracking_audit_logs", ["target_type", "target_id"])
    op.create_index("idx_tracking_audit_ts", "tracking_audit_logs", ["timestamp"])


def downgrade():
    op.drop_table("tracking_audit_logs")
    op.drop_table("step_versions")
    op.drop_table("progress_steps")
    op.drop_table("entity_versions")
    op.drop_table("tracked_entities")
