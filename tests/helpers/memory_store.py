"""In-memory ``TransactionStore`` for engine tests that do not need SQL."""

from __future__ import annotations

from typing import Any

from hybrid_categorizer.models import Decision, QueueItem, RejectedRow, Transaction


class MemoryStore:
    def __init__(
        self, txs: list[Transaction] | None = None, *, rejected: list[RejectedRow] | None = None
    ) -> None:
        self.txs: dict[str, Transaction] = {tx.id: tx for tx in txs or []}
        # Invalid rows sit at the head of the queue until something categorizes them.
        self.rejected: dict[str, RejectedRow] = {r.id: r for r in rejected or []}
        self.updates: list[dict[str, Any]] = []
        self.decisions: list[Decision] = []
        self.fail_decisions = False
        self.fail_fetch = False
        self.fetches = 0

    def fetch_uncategorized(self, org_id: str | None, limit: int) -> list[QueueItem]:
        self.fetches += 1
        if self.fail_fetch:
            raise ConnectionError("database unavailable")
        pending: list[QueueItem] = [
            r for r in self.rejected.values() if org_id is None or r.org_id == org_id
        ]
        pending += [
            tx
            for tx in self.txs.values()
            if tx.category_id is None and (org_id is None or tx.org_id == org_id)
        ]
        return pending[:limit]

    def count_uncategorized(self, org_id: str | None) -> int:
        rejected = sum(1 for r in self.rejected.values() if org_id is None or r.org_id == org_id)
        return rejected + sum(
            1
            for tx in self.txs.values()
            if tx.category_id is None and (org_id is None or tx.org_id == org_id)
        )

    def update_categorization(
        self,
        tx_id: str,
        *,
        category_id: str,
        confidence: float | None,
        needs_review: bool,
        attributes: dict[str, Any],
    ) -> None:
        if tx_id not in self.txs and tx_id not in self.rejected:
            raise LookupError(f"transaction {tx_id} not found")
        self.updates.append(
            {
                "tx_id": tx_id,
                "category_id": category_id,
                "confidence": confidence,
                "needs_review": needs_review,
                "attributes": attributes,
            }
        )
        if self.rejected.pop(tx_id, None) is not None:
            return
        self.txs[tx_id] = self.txs[tx_id].model_copy(
            update={
                "category_id": category_id,
                "confidence": confidence,
                "needs_review": needs_review,
                "attributes": attributes,
            }
        )

    def insert_decision(self, decision: Decision) -> None:
        if self.fail_decisions:
            raise RuntimeError("decisions table is read-only")
        self.decisions.append(decision)
