"""add telemetry batches

Revision ID: 0002_telemetry_batches
Revises: 0001_initial
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_telemetry_batches"
down_revision: Union[str, Sequence[str], None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "telemetry_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="consolidating"),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("segments", sa.JSON(), nullable=True),
        sa.Column("segments_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_distance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_mileage", sa.Integer(), nullable=True),
        sa.Column("last_mileage", sa.Integer(), nullable=True),
        sa.Column("merkle_root", sa.String(64), nullable=False),
        sa.Column("solana_tx", sa.String(128), nullable=True),
        sa.Column("simulated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_error", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("vehicle_id", "batch_date", name="uq_telemetry_batches_vehicle_date"),
    )
    op.create_index("idx_telemetry_batches_status", "telemetry_batches", ["status"])


def downgrade() -> None:
    op.drop_index("idx_telemetry_batches_status", table_name="telemetry_batches")
    op.drop_table("telemetry_batches")
