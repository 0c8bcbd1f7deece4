from __future__ import annotations

from dataclasses import replace

import pytest

from hybrid_categorizer.apply import decide_and_apply, needs_review_for
from hybrid_categorizer.dispatch import HybridDispatcher
from hybrid_categorizer.errors import AuditWriteError, ProgrammingError
from hybrid_categorizer.models import Transaction
from tests.helpers.memory_store import MemoryStore

SLACK = Transaction(id="tx-1", org_id="org-1", merchant_name="Slack", amount_cents=-1_500)
FAST_FOOD = Transaction(
    id="tx-2", org_id="org-1", mcc="5814", merchant_name="Wendy's", amount_cents=-1_100
)


def _dispatch(tx: Transaction):
    return HybridDispatcher(None).categorize(tx).value


def test_confident_clean_result_is_auto_applied() -> None:
    store = MemoryStore([SLACK])

    receipt = decide_and_apply(store, SLACK, _dispatch(SLACK), auto_apply_threshold=0.95)

    assert receipt.auto_applied
    assert store.updates == [
        {
            "tx_id": "tx-1",
            "category_id": receipt.category_id,
            "confidence": 0.95,
            "needs_review": False,
            "attributes": {},
        }
    ]
    assert len(store.decisions) == 1
    decision = store.decisions[0]
    assert decision.source == "pass1"
    assert decision.org_id == "org-1"
    assert decision.created_at.tzinfo is not None


def test_below_threshold_is_marked_for_review() -> None:
    store = MemoryStore([FAST_FOOD])

    receipt = decide_and_apply(store, FAST_FOOD, _dispatch(FAST_FOOD), auto_apply_threshold=0.95)

    assert receipt.needs_review
    assert store.txs["tx-2"].needs_review


def test_guardrail_finding_forces_review_and_is_audited() -> None:
    tx = Transaction(
        id="tx-3", org_id="org-1", merchant_name="Slack", amount_cents=-1_500, mcc="6011"
    )
    store = MemoryStore([tx])
    dispatch = _dispatch(tx)

    receipt = decide_and_apply(store, tx, dispatch, auto_apply_threshold=0.5)

    assert dispatch.guardrail.violation_kinds == ("mcc_incompatible",)
    assert receipt.needs_review
    assert receipt.decision.rationale[-1].startswith("guardrail mcc_incompatible: MCC 6011")


def test_needs_review_for_requires_confidence() -> None:
    dispatch = _dispatch(SLACK)
    no_conf = replace(dispatch, result=replace(dispatch.result, confidence=None))

    assert not needs_review_for(dispatch, 0.95)
    assert needs_review_for(dispatch, 0.96)
    assert needs_review_for(no_conf, 0.0)


def test_audit_failure_keeps_the_update_and_is_reported() -> None:
    store = MemoryStore([SLACK])
    store.fail_decisions = True

    receipt = decide_and_apply(store, SLACK, _dispatch(SLACK), auto_apply_threshold=0.95)

    assert isinstance(receipt.audit_error, AuditWriteError)
    assert receipt.audit_error.tx_id == "tx-1"
    assert store.txs["tx-1"].category_id == receipt.category_id
    assert store.decisions == []


def test_dispatch_without_category_is_a_programming_error() -> None:
    dispatch = _dispatch(SLACK)
    empty = replace(dispatch, result=replace(dispatch.result, category_id=None))
    store = MemoryStore([SLACK])

    with pytest.raises(ProgrammingError):
        decide_and_apply(store, SLACK, empty, auto_apply_threshold=0.95)
    assert store.updates == []


def test_missing_transaction_propagates_lookup_error() -> None:
    with pytest.raises(LookupError):
        decide_and_apply(MemoryStore(), SLACK, _dispatch(SLACK), auto_apply_threshold=0.95)
