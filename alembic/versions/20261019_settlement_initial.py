"""
Initial database schema for the settlement workers.

Creates the tables used by the database settlement store: stored requests,
classification and matching decisions, settlement instructions, proof
claims, listings and reservations, journal postings, transfer records,
receipts and the per-event state tracker.  They correspond to the
SQLAlchemy metadata defined in
``settlement/src/settlement/services/db_state_store.py``.

Revision ID: 20261019_settlement_initial
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_settlement_initial"
down_revision = None
branch_labels = None
depends_on = None

DOCUMENT_TABLES = ("requests", "orders", "plans", "receipts")


def upgrade() -> None:
    """Create the settlement store tables."""
    for name in DOCUMENT_TABLES:
        op.create_table(
            name,
            sa.Column("event_id", sa.String(), primary_key=True),
            sa.Column("payload", sa.JSON(), nullable=False),
        )
    op.create_table(
        "instructions",
        sa.Column("match_id", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False, index=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_table(
        "proof_claims",
        sa.Column("proof", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False),
    )
    op.create_table(
        "listings",
        sa.Column("listing_id", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("seller_id", sa.String(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("available_amount", sa.Integer(), nullable=False),
        sa.Column("price_per_unit", sa.Numeric(precision=18, scale=8), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("allow_partial_fills", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "reservations",
        sa.Column("match_id", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False, index=True),
        sa.Column("buyer_id", sa.String(), nullable=False),
        sa.Column("seller_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("listing_id", sa.String(), nullable=True, index=True),
        sa.Column("price_per_unit", sa.Numeric(precision=18, scale=8), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "postings",
        sa.Column("posting_id", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False, index=True),
        sa.Column("posted_at", sa.DateTime(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_table(
        "transfers",
        sa.Column("idempotency_key", sa.String(), primary_key=True),
        sa.Column("event_id", sa.String(), nullable=False, index=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_table(
        "event_states",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
    )
    op.create_table(
        "event_state_times",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("state", sa.String(), primary_key=True),
        sa.Column("reached_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    """Drop the settlement store tables."""
    for name in (
        "event_state_times",
        "event_states",
        "transfers",
        "postings",
        "reservations",
        "listings",
        "proof_claims",
        "instructions",
        *reversed(DOCUMENT_TABLES),
    ):
        op.drop_table(name)
