# ruff: noqa: I001
"""Storage seam for the categorization engine.

The engine only talks to storage through :class:`TransactionStore`. The
default implementation, :class:`SqlTransactionStore`, uses the shared
SQLAlchemy models in ``db.models.finance`` and opens one short transaction
per operation through ``db.client.session_scope``.

Scope:
- Fetch/count uncategorized transactions (oldest first, optional org filter).
  Rows that fail validation come back as :class:`RejectedRow` line items in
  their queue position so callers can take them off the queue.
- Write a categorization onto ``transactions``.
- Append a row to ``decisions``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

from sqlalchemy import func, select, update

from db.client import session_scope
from db.models.finance import DecisionRow, TransactionRow
from .errors import ValidationError
from .logging_setup import get_logger
from .models import Decision, QueueItem, RejectedRow, Transaction, parse_transaction

_logger = get_logger("hybrid_categorizer.persistence")


class TransactionStore(Protocol):
    def fetch_uncategorized(self, org_id: str | None, limit: int) -> list[QueueItem]: ...

    def count_uncategorized(self, org_id: str | None) -> int: ...

    def update_categorization(
        self,
        tx_id: str,
        *,
        category_id: str,
        confidence: float | None,
        needs_review: bool,
        attributes: dict[str, Any],
    ) -> None: ...

    def insert_decision(self, decision: Decision) -> None: ...


def row_to_transaction(row: TransactionRow) -> Transaction:
    """Convert an ORM row into a validated :class:`Transaction`."""

    return parse_transaction(
        {
            "id": row.id,
            "org_id": row.org_id,
            "merchant_name": row.merchant_name,
            "description": row.description or "",
            "mcc": row.mcc,
            "amount_cents": row.amount_cents,
            "currency": row.currency or "USD",
            "date": row.date,
            "category_id": row.category_id,
            "confidence": row.confidence,
            "needs_review": bool(row.needs_review),
            "reviewed": bool(row.reviewed),
            "attributes": dict(row.attributes or {}),
            "raw": dict(row.raw or {}),
            "created_at": row.created_at,
        }
    )


class SqlTransactionStore:
    """:class:`TransactionStore` backed by SQLAlchemy.

    Parameters
    ----------
    database_url:
        Explicit URL; when ``None`` the ``DATABASE_URL`` environment variable
        is used by ``db.client``.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url

    def _uncategorized(self, org_id: str | None):  # type: ignore[no-untyped-def]
        stmt = select(TransactionRow).where(TransactionRow.category_id.is_(None))
        if org_id is not None:
            stmt = stmt.where(TransactionRow.org_id == org_id)
        return stmt

    def fetch_uncategorized(self, org_id: str | None, limit: int) -> list[QueueItem]:
        if limit <= 0:
            return []
        stmt = (
            self._uncategorized(org_id)
            .order_by(TransactionRow.created_at.asc(), TransactionRow.id.asc())
            .limit(limit)
        )
        out: list[QueueItem] = []
        with session_scope(database_url=self._database_url) as session:
            rows: Sequence[TransactionRow] = session.execute(stmt).scalars().all()
            for row in rows:
                try:
                    out.append(row_to_transaction(row))
                except ValidationError as e:
                    _logger.error(
                        "persistence:invalid_row tx_id=%s problems=%s", row.id, e.problems
                    )
                    out.append(
                        RejectedRow(id=row.id, org_id=row.org_id, problems=tuple(e.problems))
                    )
        _logger.debug("persistence:fetched org_id=%s count=%d", org_id, len(out))
        return out

    def count_uncategorized(self, org_id: str | None) -> int:
        stmt = select(func.count()).select_from(self._uncategorized(org_id).subquery())
        with session_scope(database_url=self._database_url) as session:
            return int(session.execute(stmt).scalar_one())

    def update_categorization(
        self,
        tx_id: str,
        *,
        category_id: str,
        confidence: float | None,
        needs_review: bool,
        attributes: dict[str, Any],
    ) -> None:
        stmt = (
            update(TransactionRow)
            .where(TransactionRow.id == tx_id)
            .values(
                category_id=category_id,
                confidence=confidence,
                needs_review=needs_review,
                reviewed=False,
                attributes=dict(attributes),
                categorized_at=func.now(),
                updated_at=func.now(),
            )
        )
        with session_scope(database_url=self._database_url) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                raise LookupError(f"transaction {tx_id!r} not found")

    def insert_decision(self, decision: Decision) -> None:
        with session_scope(database_url=self._database_url) as session:
            session.add(
                DecisionRow(
                    tx_id=decision.tx_id,
                    org_id=decision.org_id,
                    category_id=decision.category_id,
                    confidence=decision.confidence,
                    source=decision.source,
                    rationale=list(decision.rationale),
                    created_at=decision.created_at,
                )
            )


__all__ = ["SqlTransactionStore", "TransactionStore", "row_to_transaction"]
