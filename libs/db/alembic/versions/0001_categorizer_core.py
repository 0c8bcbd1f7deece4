# ruff: noqa: I001
"""Categorizer core tables: categories, transactions, decisions.

Revision ID: 0001_categorizer_core
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_categorizer_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # categories (two-level; rows are upserted by `hybrid-categorizer seed-taxonomy`)
    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(36), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("is_pnl", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("industries", sa.JSON(), nullable=False),
        sa.Column("attribute_schema", sa.JSON(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["categories.id"],
            name="fk_categories_parent_id",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint("tier in (1, 2)", name="ck_categories_tier"),
        sa.CheckConstraint(
            "type in ('revenue','cogs','opex','liability','clearing','asset','equity')",
            name="ck_categories_type",
        ),
    )

    # transactions
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("mcc", sa.CHAR(4), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.CHAR(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("attributes", sa.JSON(), nullable=False),
        sa.Column("raw", sa.JSON(), nullable=False),
        sa.Column("categorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["categories.id"],
            name="fk_transactions_category_id",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence",
        ),
    )
    op.create_index(
        "ix_transactions_org_uncategorized",
        "transactions",
        ["org_id", "category_id", "created_at"],
    )

    # decisions (append-only audit trail)
    op.create_table(
        "decisions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tx_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("category_id", sa.String(36), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("rationale", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(
            ["tx_id"],
            ["transactions.id"],
            name="fk_decisions_tx_id",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["categories.id"],
            name="fk_decisions_category_id",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint("source in ('pass1','llm')", name="ck_decisions_source"),
    )
    op.create_index("ix_decisions_tx_id", "decisions", ["tx_id"])


def downgrade() -> None:
    op.drop_index("ix_decisions_tx_id", table_name="decisions")
    op.drop_table("decisions")
    op.drop_index("ix_transactions_org_uncategorized", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
