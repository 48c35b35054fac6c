"""Create study streak and session tables.

``user_streak`` holds one row per member per guild with the streak counters,
today's accumulated voice minutes and the evaluation fence date.
``study_session`` logs every closed voice session; ``study_total`` keeps the
all-time seconds so totals survive session cleanup.

Revision ID: 3f9c2a7e1b40
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3f9c2a7e1b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_streak",
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("guild_id", sa.BigInteger, nullable=False),
        sa.Column("current_streak_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_streak_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_activity_date", sa.Date, nullable=True),
        sa.Column("daily_activity_minutes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("activity_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("streak_evaluated_date", sa.Date, nullable=True),
        sa.Column("warning_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("user_id", "guild_id"),
        sa.CheckConstraint("current_streak_count >= 0", name="ck_user_streak_current_nonneg"),
        sa.CheckConstraint("daily_activity_minutes >= 0", name="ck_user_streak_minutes_nonneg"),
    )
    op.create_index(
        "ix_user_streak_evaluated_date",
        "user_streak",
        ["streak_evaluated_date"],
    )
    op.create_index(
        "ix_user_streak_last_activity_date",
        "user_streak",
        ["last_activity_date"],
    )

    op.create_table(
        "study_session",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("guild_id", sa.BigInteger, nullable=False),
        sa.Column("channel_id", sa.BigInteger, nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reason", sa.Text, nullable=False, server_default="leave"),
    )
    op.create_index(
        "ix_study_session_user_start",
        "study_session",
        ["user_id", "guild_id", "start_time"],
    )
    op.create_index(
        "ix_study_session_end_time",
        "study_session",
        ["end_time"],
    )

    op.create_table(
        "study_total",
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("guild_id", sa.BigInteger, nullable=False),
        sa.Column("total_seconds", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("user_id", "guild_id"),
    )


def downgrade() -> None:
    op.drop_table("study_total")
    op.drop_index("ix_study_session_end_time", table_name="study_session")
    op.drop_index("ix_study_session_user_start", table_name="study_session")
    op.drop_table("study_session")
    op.drop_index("ix_user_streak_last_activity_date", table_name="user_streak")
    op.drop_index("ix_user_streak_evaluated_date", table_name="user_streak")
    op.drop_table("user_streak")
