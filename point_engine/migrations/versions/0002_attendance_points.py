"""Add attendance points with SRO and GBRO expiration state

Revision ID: 0002_attendance_points
Revises: 0001_initial
Create Date: 2026-10-01 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_attendance_points"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_point_type = postgresql.ENUM(
    "TARDY",
    "UNDERTIME",
    "UNDERTIME_SEVERE",
    "HALF_DAY_ABSENCE",
    "WHOLE_DAY_ABSENCE_ADVISED",
    "WHOLE_DAY_ABSENCE_UNADVISED",
    name="attendance_point_type",
    create_type=False,
)

attendance_point_expiration_type = postgresql.ENUM(
    "NONE",
    "SRO",
    "GBRO",
    name="attendance_point_expiration_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    attendance_point_type.create(bind, checkfirst=True)
    attendance_point_expiration_type.create(bind, checkfirst=True)

    op.create_table(
        "attendance_points",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "attendance_id",
            sa.Integer(),
            sa.ForeignKey("attendances.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("shift_date", sa.Date(), nullable=False),
        sa.Column("point_type", attendance_point_type, nullable=False),
        sa.Column("points", sa.Numeric(5, 2), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=True),
        sa.Column("is_advised", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_excused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("excused_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("excused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("excuse_reason", sa.String(length=500), nullable=True),
        sa.Column("expires_at", sa.Date(), nullable=False),
        sa.Column(
            "expiration_type",
            attendance_point_expiration_type,
            nullable=False,
            server_default=sa.text("'SRO'"),
        ),
        sa.Column("is_expired", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("expired_at", sa.Date(), nullable=True),
        sa.Column("eligible_for_gbro", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("gbro_expires_at", sa.Date(), nullable=True),
        sa.Column("tardy_minutes", sa.Integer(), nullable=True),
        sa.Column("undertime_minutes", sa.Integer(), nullable=True),
        sa.Column("violation_details", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_attendance_points_user_id", "attendance_points", ["user_id"], unique=False)
    # Not unique: legacy duplicates must be loadable so maintenance can remove them.
    op.create_index("ix_attendance_points_attendance_id", "attendance_points", ["attendance_id"], unique=False)
    op.create_index("ix_attendance_points_point_type", "attendance_points", ["point_type"], unique=False)
    op.create_index(
        "ix_attendance_points_user_shift_date",
        "attendance_points",
        ["user_id", "shift_date"],
        unique=False,
    )
    op.create_index(
        "ix_attendance_points_expiry_scan",
        "attendance_points",
        ["is_expired", "is_excused", "expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_attendance_points_expiry_scan", table_name="attendance_points")
    op.drop_index("ix_attendance_points_user_shift_date", table_name="attendance_points")
    op.drop_index("ix_attendance_points_point_type", table_name="attendance_points")
    op.drop_index("ix_attendance_points_attendance_id", table_name="attendance_points")
    op.drop_index("ix_attendance_points_user_id", table_name="attendance_points")
    op.drop_table("attendance_points")

    bind = op.get_bind()
    attendance_point_expiration_type.drop(bind, checkfirst=True)
    attendance_point_type.drop(bind, checkfirst=True)
