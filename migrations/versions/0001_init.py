"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "assigned_rotations",
        sa.Column("instance_id", sa.String(length=128), primary_key=True),
        sa.Column("endpoint_id", sa.String(length=64), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cluster_id", sa.String(length=64), nullable=False),
        sa.Column("rotation_id", sa.String(length=64), nullable=False),
        sa.Column("regions", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        *_timestamps(),
        sa.UniqueConstraint("rotation_id", name="uq_assigned_rotations_rotation_id"),
    )
    op.create_index("ix_assigned_rotations_rotation_id", "assigned_rotations", ["rotation_id"])

    op.create_table(
        "rotation_locks",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("token", sa.String(length=64), nullable=False),
        sa.Column("holder", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "nodes",
        sa.Column("hostname", sa.String(length=255), primary_key=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("parent_hostname", sa.String(length=255), nullable=True),
        sa.Column("owner", sa.String(length=255), nullable=True),
        sa.Column("cluster_id", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_nodes_type", "nodes", ["type"])
    op.create_index("ix_nodes_owner", "nodes", ["owner"])

    op.create_table(
        "load_balancers",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("cluster_id", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("instance_hostname", sa.String(length=255), nullable=True),
        sa.Column("networks", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        *_timestamps(),
    )
    op.create_index("ix_load_balancers_owner", "load_balancers", ["owner"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("fields", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
    )
    op.create_index("ix_events_category", "events", ["category"])
    op.create_index("ix_events_created_at", "events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_events_created_at", table_name="events")
    op.drop_index("ix_events_category", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_load_balancers_owner", table_name="load_balancers")
    op.drop_table("load_balancers")
    op.drop_index("ix_nodes_owner", table_name="nodes")
    op.drop_index("ix_nodes_type", table_name="nodes")
    op.drop_table("nodes")
    op.drop_table("rotation_locks")
    op.drop_index("ix_assigned_rotations_rotation_id", table_name="assigned_rotations")
    op.drop_table("assigned_rotations")
