"""add routine, activity and routine log tables

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACTIVITY_KINDS = ("physical_activity", "feeding", "medication")
ACTIVITY_STATUSES = ("pending", "completed", "not_completed")
LOG_ACTIONS = (
    "activity_created",
    "activity_updated",
    "activity_deleted",
    "all_activities_deleted",
    "caregiver_assigned",
)


def upgrade() -> None:
    op.create_table(
        "routines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("dependent_id", sa.String(length=64), nullable=False),
        sa.Column("caregiver_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_routines_dependent_id", "routines", ["dependent_id"], unique=True)
    op.create_index("ix_routines_caregiver_id", "routines", ["caregiver_id"])

    op.create_table(
        "routine_activities",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("routine_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.Enum(*ACTIVITY_KINDS, name="activity_kind"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("schedule", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*ACTIVITY_STATUSES, name="activity_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("completion_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("specific_data", sa.JSON(), nullable=False),
        sa.Column("pre_notification_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("immediate_alarm_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("failure_alert_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["routine_id"], ["routines.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_routine_activities_routine_id", "routine_activities", ["routine_id"])
    op.create_index("ix_routine_activities_status_schedule", "routine_activities", ["status", "schedule"])

    op.create_table(
        "routine_log_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("routine_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.Enum(*LOG_ACTIONS, name="routine_log_action"), nullable=False),
        sa.Column("activity_id", sa.String(length=32), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["routine_id"], ["routines.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_routine_log_entries_routine_id", "routine_log_entries", ["routine_id"])


def downgrade() -> None:
    op.drop_index("ix_routine_log_entries_routine_id", table_name="routine_log_entries")
    op.drop_table("routine_log_entries")

    op.drop_index("ix_routine_activities_status_schedule", table_name="routine_activities")
    op.drop_index("ix_routine_activities_routine_id", table_name="routine_activities")
    op.drop_table("routine_activities")

    op.drop_index("ix_routines_caregiver_id", table_name="routines")
    op.drop_index("ix_routines_dependent_id", table_name="routines")
    op.drop_table("routines")

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS routine_log_action")
        op.execute("DROP TYPE IF EXISTS activity_status")
        op.execute("DROP TYPE IF EXISTS activity_kind")
