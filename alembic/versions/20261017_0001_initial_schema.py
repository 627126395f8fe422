"""Trade ledger, positions, sync cursors and contest registrations.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tracked_tokens",
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("symbol", sa.String(50), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("genesis_block", sa.BigInteger(), nullable=True),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_address"),
    )

    # Append-only ledger; one row per (tx, token, wallet, side)
    op.create_table(
        "trades",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("token_amount", sa.Numeric(48, 18), nullable=False),
        sa.Column("usd_value", sa.Numeric(38, 12), nullable=False),
        sa.Column("price_usd", sa.Numeric(38, 18), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("tx_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "transaction_hash",
            "token_address",
            "wallet_address",
            "side",
            name="uq_trades_dedup",
        ),
    )
    op.create_index(
        "idx_trades_wallet_token_block",
        "trades",
        ["wallet_address", "token_address", "block_number"],
    )
    op.create_index("idx_trades_token_block", "trades", ["token_address", "block_number"])

    op.create_table(
        "positions",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("remaining_amount", sa.Numeric(48, 18), nullable=False),
        sa.Column("cost_basis_usd", sa.Numeric(38, 12), nullable=False),
        sa.Column("realized_pnl_usd", sa.Numeric(38, 12), nullable=False),
        sa.Column("trade_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "token_address"),
    )
    op.create_index(
        "idx_positions_token_realized", "positions", ["token_address", "realized_pnl_usd"]
    )

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
    )

    op.create_table(
        "wallet_token_cursors",
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "token_address"),
    )

    op.create_table(
        "contests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_contests_token", "contests", ["token_address"])

    op.create_table(
        "contest_registrations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contest_id", sa.Integer(), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("indexing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("indexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pnl_calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_pnl", sa.Numeric(38, 12), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "contest_id", "wallet_address", name="uq_registration_contest_wallet"
        ),
    )
    op.create_index(
        "idx_registrations_contest_pnl", "contest_registrations", ["contest_id", "current_pnl"]
    )


def downgrade() -> None:
    op.drop_index("idx_registrations_contest_pnl", table_name="contest_registrations")
    op.drop_table("contest_registrations")

    op.drop_index("idx_contests_token", table_name="contests")
    op.drop_table("contests")

    op.drop_table("wallet_token_cursors")
    op.drop_table("wallets")

    op.drop_index("idx_positions_token_realized", table_name="positions")
    op.drop_table("positions")

    op.drop_index("idx_trades_token_block", table_name="trades")
    op.drop_index("idx_trades_wallet_token_block", table_name="trades")
    op.drop_table("trades")

    op.drop_table("tracked_tokens")
