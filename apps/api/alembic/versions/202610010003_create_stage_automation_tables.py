"""create stage automation, deal automation runs and automation log

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ACTIVE_RUN_PREDICATE = "status IN ('pending', 'flow_sent', 'waiting')"


def upgrade() -> None:
    op.create_table(
        "crm_stage_automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("flow_id", sa.Uuid(), nullable=True),
        sa.Column("wait_hours", sa.Integer(), nullable=False),
        sa.Column("next_stage_id", sa.Uuid(), nullable=True),
        sa.Column("fallback_funnel_id", sa.Uuid(), nullable=True),
        sa.Column("fallback_stage_id", sa.Uuid(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("execute_immediately", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_stage.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["flow_id"], ["flow.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["next_stage_id"], ["crm_stage.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["fallback_funnel_id"], ["crm_funnel.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["fallback_stage_id"], ["crm_stage.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stage_id"),
    )

    op.create_table(
        "crm_deal_automation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("automation_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("flow_id", sa.Uuid(), nullable=True),
        sa.Column("flow_session_id", sa.Uuid(), nullable=True),
        sa.Column("flow_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wait_hours", sa.Integer(), nullable=False),
        sa.Column("next_stage_id", sa.Uuid(), nullable=True),
        sa.Column("next_funnel_id", sa.Uuid(), nullable=True),
        sa.Column("contact_phone", sa.String(length=32), nullable=True),
        sa.Column("flow_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("wait_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("moved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["crm_deal.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_stage.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["automation_id"], ["crm_stage_automation.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_crm_deal_automation_active_deal_stage",
        "crm_deal_automation",
        ["deal_id", "stage_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_RUN_PREDICATE),
        sqlite_where=sa.text(ACTIVE_RUN_PREDICATE),
    )
    op.create_index(
        "ix_crm_deal_automation_status_wait_until",
        "crm_deal_automation",
        ["status", "wait_until"],
        unique=False,
    )
    op.create_index(
        "ix_crm_deal_automation_contact_phone_status",
        "crm_deal_automation",
        ["contact_phone", "status"],
        unique=False,
    )
    op.create_index(
        "ix_crm_deal_automation_deal_created",
        "crm_deal_automation",
        ["deal_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "crm_automation_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_automation_id", sa.Uuid(), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_automation_id"], ["crm_deal_automation.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_automation_log_deal_created",
        "crm_automation_log",
        ["deal_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_automation_log_deal_created", table_name="crm_automation_log")
    op.drop_table("crm_automation_log")

    op.drop_index("ix_crm_deal_automation_deal_created", table_name="crm_deal_automation")
    op.drop_index("ix_crm_deal_automation_contact_phone_status", table_name="crm_deal_automation")
    op.drop_index("ix_crm_deal_automation_status_wait_until", table_name="crm_deal_automation")
    op.drop_index("uq_crm_deal_automation_active_deal_stage", table_name="crm_deal_automation")
    op.drop_table("crm_deal_automation")

    op.drop_table("crm_stage_automation")
