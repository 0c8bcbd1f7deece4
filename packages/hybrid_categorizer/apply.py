"""Write a dispatch decision onto the transaction and append the audit record.

The transaction update always happens first. The decision row is then
appended; if that insert fails the update stays in place and the failure is
reported on the :class:`ApplyReceipt` as an :class:`AuditWriteError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from .dispatch import Dispatch
from .errors import AuditWriteError, ProgrammingError
from .logging_setup import get_logger
from .models import Decision, Transaction
from .persistence import TransactionStore

_logger = get_logger("hybrid_categorizer.apply")


@dataclass(frozen=True, slots=True)
class ApplyReceipt:
    tx_id: str
    category_id: str
    confidence: float | None
    needs_review: bool
    decision: Decision
    audit_error: AuditWriteError | None = None

    @property
    def auto_applied(self) -> bool:
        return not self.needs_review


def needs_review_for(dispatch: Dispatch, auto_apply_threshold: float) -> bool:
    """``True`` unless confidence clears the threshold and nothing forced review."""

    confidence = dispatch.result.confidence
    clears = confidence is not None and confidence >= auto_apply_threshold
    return not clears or dispatch.force_review


def decide_and_apply(
    store: TransactionStore,
    tx: Transaction,
    dispatch: Dispatch,
    *,
    auto_apply_threshold: float,
) -> ApplyReceipt:
    """Persist ``dispatch`` for ``tx``.

    Raises
    ------
    ProgrammingError
        When the dispatch carries no category; the dispatcher always supplies
        one, so this means a caller bypassed it.
    """

    result = dispatch.result
    if result.category_id is None:
        raise ProgrammingError(f"dispatch for {tx.id!r} carries no category")

    needs_review = needs_review_for(dispatch, auto_apply_threshold)
    store.update_categorization(
        tx.id,
        category_id=result.category_id,
        confidence=result.confidence,
        needs_review=needs_review,
        attributes=dict(result.attributes),
    )

    rationale = list(result.rationale)
    rationale.extend(f"guardrail {v.kind}: {v.detail}" for v in dispatch.guardrail.violations)
    decision = Decision(
        tx_id=tx.id,
        org_id=tx.org_id,
        category_id=result.category_id,
        confidence=result.confidence,
        source=result.engine,
        rationale=tuple(rationale),
        created_at=datetime.now(UTC),
    )

    audit_error: AuditWriteError | None = None
    try:
        store.insert_decision(decision)
    except Exception as e:  # noqa: BLE001 - the categorization itself is already applied
        audit_error = AuditWriteError(tx.id, e)
        _logger.error(
            "apply:audit_write_failed tx_id=%s org_id=%s error=%s",
            tx.id,
            tx.org_id,
            e.__class__.__name__,
        )

    _logger.info(
        "apply:applied tx_id=%s category_id=%s confidence=%s needs_review=%s source=%s",
        tx.id,
        result.category_id,
        result.confidence,
        needs_review,
        result.engine,
    )
    return ApplyReceipt(
        tx_id=tx.id,
        category_id=result.category_id,
        confidence=result.confidence,
        needs_review=needs_review,
        decision=decision,
        audit_error=audit_error,
    )


__all__ = ["ApplyReceipt", "decide_and_apply", "needs_review_for"]
