"""create flows, flow sessions and inbox messages

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "flow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flow_organization_active", "flow", ["organization_id", "is_active"], unique=False)

    op.create_table(
        "flow_session",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("flow_id", sa.Uuid(), nullable=False),
        sa.Column("contact_phone", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["flow_id"], ["flow.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_flow_session_phone_status", "flow_session", ["contact_phone", "status"], unique=False)
    op.create_index("ix_flow_session_flow_id", "flow_session", ["flow_id"], unique=False)

    op.create_table(
        "inbox_message",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False, server_default="inbound"),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id", name="uq_inbox_message_external_id"),
    )
    op.create_index(
        "ix_inbox_message_phone_received",
        "inbox_message",
        ["phone", "direction", "received_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_inbox_message_phone_received", table_name="inbox_message")
    op.drop_table("inbox_message")

    op.drop_index("ix_flow_session_flow_id", table_name="flow_session")
    op.drop_index("ix_flow_session_phone_status", table_name="flow_session")
    op.drop_table("flow_session")

    op.drop_index("ix_flow_organization_active", table_name="flow")
    op.drop_table("flow")
