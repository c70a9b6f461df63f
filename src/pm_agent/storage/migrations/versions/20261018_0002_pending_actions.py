"""Approval queue pending actions with execution claim marker."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pending_actions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False, server_default="manual"),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("action_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("action_payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("telegram_message_id", sa.Integer(), nullable=True),
        sa.Column("execution_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "action_type IN ('create_issue', 'comment_issue', 'close_issue', 'create_pr', "
            "'merge_pr', 'notify', 'custom')",
            name="ck_pending_actions_action_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired')",
            name="ck_pending_actions_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pending_actions_task_id", "pending_actions", ["task_id"], unique=False)
    op.create_index(
        "ix_pending_actions_action_type",
        "pending_actions",
        ["action_type"],
        unique=False,
    )
    op.create_index(
        "idx_pending_actions_status_expires",
        "pending_actions",
        ["status", "expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_pending_actions_status_expires", table_name="pending_actions")
    op.drop_index("ix_pending_actions_action_type", table_name="pending_actions")
    op.drop_index("ix_pending_actions_task_id", table_name="pending_actions")
    op.drop_table("pending_actions")
