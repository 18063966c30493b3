"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-16 00:00:00.000000
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
        "clusters",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=63), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("advertise_address", sa.String(length=128), nullable=False),
        sa.Column("singleton", sa.Integer(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("singleton"),
        sa.CheckConstraint("state IN ('init', 'active', 'degraded')", name="ck_clusters_state"),
        sa.CheckConstraint("singleton = 1", name="ck_clusters_singleton"),
    )

    op.create_table(
        "nodes",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "cluster_id",
            sa.String(length=64),
            sa.ForeignKey("clusters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("hostname", sa.String(length=253), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("draining", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "joined_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("cluster_id", "hostname", name="uq_nodes_cluster_hostname"),
        sa.UniqueConstraint("cluster_id", "ip", name="uq_nodes_cluster_ip"),
        sa.CheckConstraint("role IN ('leader', 'member')", name="ck_nodes_role"),
        sa.CheckConstraint("status IN ('joining', 'online', 'offline')", name="ck_nodes_status"),
    )
    op.create_index("ix_nodes_cluster_id", "nodes", ["cluster_id"])
    op.create_index("ix_nodes_status", "nodes", ["status"])

    op.create_table(
        "certificate_authorities",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "cluster_id",
            sa.String(length=64),
            sa.ForeignKey("clusters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cert_pem", sa.Text(), nullable=False),
        sa.Column("key_pem", sa.Text(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("cluster_id"),
    )

    op.create_table(
        "node_certificates",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "node_id",
            sa.String(length=64),
            sa.ForeignKey("nodes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cert_pem", sa.Text(), nullable=False),
        sa.Column("fingerprint", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_node_certificates_node_id", "node_certificates", ["node_id"])

    op.create_table(
        "bootstrap_tokens",
        sa.Column("token_hash", sa.String(length=128), primary_key=True),
        sa.Column("display_prefix", sa.String(length=32), nullable=False),
        sa.Column(
            "cluster_id",
            sa.String(length=64),
            sa.ForeignKey("clusters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by_node_id", sa.String(length=64), nullable=True),
        sa.Column("issued_by", sa.String(length=128), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bootstrap_tokens_cluster_id", "bootstrap_tokens", ["cluster_id"])
    op.create_index("ix_bootstrap_tokens_expires_at", "bootstrap_tokens", ["expires_at"])

    op.create_table(
        "kv_store",
        sa.Column("key", sa.String(length=128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
    )

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
    op.drop_table("kv_store")
    op.drop_index("ix_bootstrap_tokens_expires_at", table_name="bootstrap_tokens")
    op.drop_index("ix_bootstrap_tokens_cluster_id", table_name="bootstrap_tokens")
    op.drop_table("bootstrap_tokens")
    op.drop_index("ix_node_certificates_node_id", table_name="node_certificates")
    op.drop_table("node_certificates")
    op.drop_table("certificate_authorities")
    op.drop_index("ix_nodes_status", table_name="nodes")
    op.drop_index("ix_nodes_cluster_id", table_name="nodes")
    op.drop_table("nodes")
    op.drop_table("clusters")
