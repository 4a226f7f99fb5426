"""Create controls and control_mappings tables

Revision ID: 001_control_harmonization
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "001_control_harmonization"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table)


def upgrade() -> None:
    # ── 1. controls ──
    if not _table_exists("controls"):
        op.create_table(
            "controls",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("control_id", sa.String(50), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("framework", sa.String(255), nullable=False),
            sa.Column("category", sa.String(255), nullable=True),
            sa.Column("client_id", sa.Integer, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint("framework", "control_id", "client_id", name="uq_controls_fw_code_client"),
        )
        op.create_index("ix_controls_framework", "controls", ["framework"])
        op.create_index("ix_controls_client", "controls", ["client_id"])

    # ── 2. control_mappings ──
    if not _table_exists("control_mappings"):
        op.create_table(
            "control_mappings",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("source_control_id", sa.Integer,
                      sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
            sa.Column("target_control_id", sa.Integer,
                      sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
            sa.Column("pair_low", sa.Integer, nullable=False),
            sa.Column("pair_high", sa.Integer, nullable=False),
            sa.Column("mapping_type", sa.String(20), nullable=False, server_default="equivalent"),
            sa.Column("confidence", sa.String(10), nullable=True),
            sa.Column("notes", sa.Text, nullable=True),
            sa.Column("mapping_source", sa.String(20), nullable=False, server_default="manual"),
            sa.Column("created_by", sa.Integer, nullable=True),
            sa.Column("created_at", sa.DateTime, server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint("pair_low", "pair_high", name="uq_cm_pair"),
            sa.CheckConstraint("source_control_id <> target_control_id", name="ck_cm_no_self"),
        )
        op.create_index("ix_cm_source", "control_mappings", ["source_control_id"])
        op.create_index("ix_cm_target", "control_mappings", ["target_control_id"])


def downgrade() -> None:
    if _table_exists("control_mappings"):
        op.drop_table("control_mappings")
    if _table_exists("controls"):
        op.drop_table("controls")
