from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: categories
# ---------------------------


class CategoryRow(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Tier-2 rows point at a tier-1 row; tier-1 rows have no parent. Depth is
    # enforced by the taxonomy registry rather than recursive constraints.
    parent_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    is_pnl: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    industries: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    attribute_schema: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint("tier in (1, 2)", name="ck_categories_tier"),
        CheckConstraint(
            "type in ('revenue','cogs','opex','liability','clearing','asset','equity')",
            name="ck_categories_type",
        ),
    )


# ---------------------------
# Core: transactions
# ---------------------------


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    mcc: Mapped[str | None] = mapped_column(CHAR(4), nullable=True)
    # Signed minor units; negative is an outflow.
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, server_default=text("'USD'"))
    date: Mapped[date | None] = mapped_column(Date, nullable=True)
    category_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    categorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence",
        ),
        # Serves the oldest-first scan of uncategorized rows per organization.
        Index("ix_transactions_org_uncategorized", "org_id", "category_id", "created_at"),
    )


# ---------------------------
# Audit: decisions (append-only)
# ---------------------------


class DecisionRow(Base):
    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    tx_id: Mapped[str] = mapped_column(
        String, ForeignKey("transactions.id", deferrable=True, initially="DEFERRED"), nullable=False
    )
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=False,
    )
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    rationale: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        CheckConstraint("source in ('pass1','llm')", name="ck_decisions_source"),
        Index("ix_decisions_tx_id", "tx_id"),
    )


__all__ = [
    "Base",
    "CategoryRow",
    "DecisionRow",
    "TransactionRow",
]
