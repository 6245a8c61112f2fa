"""Initial inscriber schema

Revision ID: 001_initial_inscriber_schema
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_inscriber_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PROPOSAL_STATUSES = (
    "active",
    "leader",
    "inscribing",
    "inscribed",
    "rejected",
    "expired",
)


def _timestamps():
    return [
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
    ]


def upgrade() -> None:
    """Create proposals, orders, checkpoint, audit and api key tables."""
    proposal_status = postgresql.ENUM(
        *PROPOSAL_STATUSES, name="proposal_status", create_type=False
    )
    proposal_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "proposals",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("ticker", sa.String(length=16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("twitter", sa.Text(), nullable=True),
        sa.Column("telegram", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("banner_url", sa.Text(), nullable=True),
        sa.Column("submitted_by", sa.BigInteger(), nullable=True),
        sa.Column("votes_up", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("votes_down", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_votes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status", proposal_status, nullable=False, server_default="active"
        ),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("first_time_as_leader", sa.DateTime(timezone=True), nullable=True),
        sa.Column("leader_start_block", sa.BigInteger(), nullable=True),
        sa.Column("leaderboard_min_blocks", sa.Integer(), nullable=False),
        sa.Column("expiration_block", sa.BigInteger(), nullable=True),
        sa.Column("won_block", sa.BigInteger(), nullable=True),
        sa.Column("won_block_hash", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("votes_up >= 0", name="ck_proposal_votes_up_non_negative"),
        sa.CheckConstraint(
            "votes_down >= 0", name="ck_proposal_votes_down_non_negative"
        ),
        sa.CheckConstraint(
            "leaderboard_min_blocks >= 1", name="ck_proposal_min_blocks_positive"
        ),
    )
    op.create_index("ix_proposals_ticker", "proposals", ["ticker"])
    op.create_index("ix_proposals_total_votes", "proposals", ["total_votes"])
    op.create_index("ix_proposals_created_at", "proposals", ["created_at"])
    op.create_index("ix_proposals_status", "proposals", ["status"])
    op.create_index(
        "ix_proposals_ranking", "proposals", ["status", "total_votes", "created_at"]
    )

    op.create_table(
        "inscription_orders",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("proposal_id", sa.BigInteger(), nullable=False),
        sa.Column("block_height", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(length=64), nullable=False),
        sa.Column("external_order_id", sa.String(length=128), nullable=True),
        sa.Column(
            "order_status",
            sa.String(length=64),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("status_detail", sa.Text(), nullable=True),
        sa.Column("payment_address", sa.String(length=128), nullable=True),
        sa.Column("payment_amount", sa.BigInteger(), nullable=True),
        sa.Column("payment_txid", sa.String(length=64), nullable=True),
        sa.Column("fee_rate", sa.Integer(), nullable=False),
        sa.Column("inscription_payload", sa.JSON(), nullable=False),
        sa.Column("inscription_id", sa.String(length=80), nullable=True),
        sa.Column("txid", sa.String(length=64), nullable=True),
        sa.Column("inscription_url", sa.Text(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"]),
        sa.CheckConstraint(
            "payment_amount IS NULL OR payment_amount >= 0",
            name="ck_order_payment_amount_non_negative",
        ),
        sa.CheckConstraint(
            "order_status <> 'completed' OR "
            "(inscription_id IS NOT NULL AND txid IS NOT NULL)",
            name="ck_order_completed_has_ids",
        ),
    )
    op.create_index(
        "ix_inscription_orders_proposal_id", "inscription_orders", ["proposal_id"]
    )
    op.create_index(
        "ix_inscription_orders_external_order_id",
        "inscription_orders",
        ["external_order_id"],
    )
    op.create_index(
        "ix_inscription_orders_created_at", "inscription_orders", ["created_at"]
    )
    op.create_index("ix_inscription_orders_status", "inscription_orders", ["order_status"])

    op.create_table(
        "progress_checkpoint",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "last_processed_block", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("last_processed_hash", sa.String(length=64), nullable=True),
        sa.Column(
            "consecutive_blocks_without_launches",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("last_launch_block", sa.BigInteger(), nullable=True),
        sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "last_processed_block >= 0", name="ck_checkpoint_block_non_negative"
        ),
        sa.CheckConstraint("id = 1", name="ck_progress_checkpoint_singleton"),
    )
    op.create_index(
        "ix_progress_checkpoint_created_at", "progress_checkpoint", ["created_at"]
    )

    op.create_table(
        "proposal_status_changes",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("proposal_id", sa.BigInteger(), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=False),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("block_height", sa.BigInteger(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(length=128), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"]),
    )
    op.create_index(
        "ix_proposal_status_changes_proposal_id",
        "proposal_status_changes",
        ["proposal_id"],
    )
    op.create_index(
        "ix_proposal_status_changes_created_at",
        "proposal_status_changes",
        ["created_at"],
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("key_hash", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key_hash"),
        sa.CheckConstraint("role IN ('admin', 'viewer')", name="ck_api_keys_valid_role"),
    )
    op.create_index("ix_api_keys_is_active", "api_keys", ["is_active"])
    op.create_index("ix_api_keys_expires", "api_keys", ["expires_at"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"])
    op.create_index("ix_api_keys_role", "api_keys", ["role"])
    op.create_index("ix_api_keys_created_at", "api_keys", ["created_at"])


def downgrade() -> None:
    """Drop all inscriber tables."""
    op.drop_table("api_keys")
    op.drop_table("proposal_status_changes")
    op.drop_table("progress_checkpoint")
    op.drop_table("inscription_orders")
    op.drop_table("proposals")
    postgresql.ENUM(name="proposal_status").drop(op.get_bind(), checkfirst=True)
