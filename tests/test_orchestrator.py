from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from hybrid_categorizer.config import EngineConfig, QueueConfig
from hybrid_categorizer.dispatch import HybridDispatcher
from hybrid_categorizer.models import (
    BatchRunRequest,
    CategorizationResult,
    RejectedRow,
    Transaction,
)
from hybrid_categorizer.orchestrator import clamp_max_batches, group_by_org, run_batches
from hybrid_categorizer.pass1 import classify
from hybrid_categorizer.persistence import SqlTransactionStore
from hybrid_categorizer.rate_limit import AdmissionController
from hybrid_categorizer.taxonomy import default_registry
from tests.helpers.db import (
    bootstrap_sqlite_db,
    fetch_decisions,
    fetch_transaction,
    insert_transactions,
)
from tests.helpers.fake_clock import FakeClock
from tests.helpers.memory_store import MemoryStore


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def capture(self, event: str, properties: Any) -> None:
        self.events.append((event, dict(properties)))


def _tx(i: int, org_id: str = "org-a", **kw: Any) -> Transaction:
    base: dict[str, Any] = {
        "id": f"{org_id}-{i:03d}",
        "org_id": org_id,
        "merchant_name": "Slack",
        "amount_cents": -1_500,
    }
    base.update(kw)
    return Transaction(**base)


def _run(
    store: Any,
    *,
    max_batches: int | None = None,
    config: EngineConfig | None = None,
    **kw: Any,
):
    cfg = config or EngineConfig()
    clock = kw.pop("clock", None) or FakeClock()
    return run_batches(
        BatchRunRequest(org_id=kw.pop("org_id", None), max_batches=max_batches),
        store=store,
        dispatcher=kw.pop("dispatcher", None) or HybridDispatcher(None, config=cfg),
        config=cfg,
        clock=clock,
        **kw,
    )


# ---- helpers --------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("requested", "expected"), [(None, 1), (0, 1), (-3, 1), (3, 3), (20, 20), (50, 20)]
)
def test_clamp_max_batches(requested: int | None, expected: int) -> None:
    assert clamp_max_batches(requested, default=1, limit=20) == expected


def test_group_by_org_preserves_order() -> None:
    batch = [_tx(1, "b"), _tx(2, "a"), _tx(3, "b")]
    groups = group_by_org(batch)
    assert list(groups) == ["b", "a"]
    assert [t.id for t in groups["b"]] == ["b-001", "b-003"]


# ---- batching against SQLite ------------------------------------------------------------


def test_twenty_five_transactions_take_three_batches(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite")
    insert_transactions(
        url,
        [
            {"id": f"tx-{i:02d}", "org_id": "org-1", "merchant_name": "Slack"}
            if i % 5
            else {"id": f"tx-{i:02d}", "org_id": "org-1", "description": "PAYMENT THANK YOU"}
            for i in range(25)
        ],
    )
    clock = FakeClock()
    telemetry = RecordingTelemetry()

    report = _run(SqlTransactionStore(url), max_batches=3, clock=clock, telemetry=telemetry)

    assert report.error is None
    assert report.processed == 25
    assert report.batches == 3
    assert report.remaining == 0
    assert not report.timeout_reached
    # Pauses only between full batches.
    assert clock.sleeps == [1.0, 1.0]

    org = report.result_for("org-1")
    assert org.processed == 25
    assert org.fallback_count == 5
    assert org.marked_for_review == 5
    assert org.auto_applied == 20
    assert org.errors == []

    assert len(fetch_decisions(url)) == 25
    assert [e for e, _ in telemetry.events if e == "batch_run_completed"] == [
        "batch_run_completed"
    ]


def test_single_batch_leaves_the_rest_queued(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite")
    insert_transactions(
        url, [{"id": f"tx-{i:02d}", "org_id": "org-1", "merchant_name": "Slack"} for i in range(12)]
    )

    report = _run(SqlTransactionStore(url))

    assert report.max_batches == 1
    assert report.processed == 10
    assert report.remaining == 2
    # The oldest rows go first.
    decided = {d.tx_id for d in fetch_decisions(url)}
    assert decided == {f"tx-{i:02d}" for i in range(10)}


def test_org_filter_only_touches_that_org(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite")
    insert_transactions(
        url,
        [
            {"id": "a-1", "org_id": "org-a", "merchant_name": "Slack"},
            {"id": "b-1", "org_id": "org-b", "merchant_name": "Slack"},
        ],
    )

    report = _run(SqlTransactionStore(url), org_id="org-b")

    assert report.processed == 1
    assert [r.org_id for r in report.results] == ["org-b"]
    assert SqlTransactionStore(url).count_uncategorized(None) == 1


def test_invalid_row_at_the_head_still_fills_its_batch(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite")
    rows: list[dict[str, Any]] = [{"id": "tx-bad", "org_id": "org-1", "currency": "DOLLARS"}]
    rows += [{"id": f"tx-{i:02d}", "org_id": "org-1", "merchant_name": "Slack"} for i in range(25)]
    insert_transactions(url, rows)
    clock = FakeClock()

    report = _run(SqlTransactionStore(url), max_batches=3, clock=clock)

    assert report.error is None
    assert report.batches == 3
    assert report.processed == 25
    assert report.remaining == 0
    assert clock.sleeps == [1.0, 1.0]

    org = report.result_for("org-1")
    assert org.rejected == 1
    assert org.errors == [
        "tx-bad: invalid transaction: currency: Value error, currency must be a 3-letter code"
    ]
    assert report.to_dict()["results"][0]["rejected"] == 1

    parked = fetch_transaction(url, "tx-bad")
    assert parked.category_id == default_registry().fallback.id
    assert parked.needs_review is True
    assert parked.confidence is None
    # Only categorized rows get an audit record.
    assert {d.tx_id for d in fetch_decisions(url)} == {f"tx-{i:02d}" for i in range(25)}


def test_a_full_batch_of_invalid_rows_does_not_stall_the_queue(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "categorizer.sqlite")
    rows: list[dict[str, Any]] = [
        {"id": f"bad-{i:02d}", "org_id": "org-1", "currency": "DOLLARS"} for i in range(10)
    ]
    rows += [{"id": f"tx-{i:02d}", "org_id": "org-1", "merchant_name": "Slack"} for i in range(5)]
    insert_transactions(url, rows)

    report = _run(SqlTransactionStore(url), max_batches=5)

    assert report.batches == 2
    assert report.processed == 5
    assert report.remaining == 0
    org = report.result_for("org-1")
    assert org.rejected == 10
    assert len(org.errors) == 10


def test_rejected_rows_are_parked_from_any_store() -> None:
    store = MemoryStore(
        [_tx(1)], rejected=[RejectedRow(id="broken", org_id="org-a", problems=("mcc: bad",))]
    )

    report = _run(store)

    assert store.rejected == {}
    assert store.updates[0]["tx_id"] == "broken"
    assert store.updates[0]["needs_review"] is True
    assert store.updates[0]["category_id"] == default_registry().fallback.id
    org = report.result_for("org-a")
    assert (org.processed, org.rejected) == (1, 1)
    assert org.errors == ["broken: invalid transaction: mcc: bad"]
    assert [d.tx_id for d in store.decisions] == ["org-a-001"]


# ---- admission ---------------------------------------------------------------------------


def test_org_at_its_cap_is_deferred() -> None:
    store = MemoryStore([_tx(1, "org-a"), _tx(1, "org-b")])
    admission = AdmissionController(org_limit=1, global_limit=5)
    admission.try_acquire("org-a")

    report = _run(store, admission=admission)

    assert report.deferred == ["org-a"]
    assert report.processed == 1
    assert report.remaining == 1
    assert store.txs["org-a-001"].category_id is None
    # Our slot for org-b was released.
    assert admission.in_flight("org-b") == 0


def test_global_cap_defers_remaining_orgs() -> None:
    store = MemoryStore([_tx(1, "org-a"), _tx(1, "org-b"), _tx(2, "org-a")])
    admission = AdmissionController(org_limit=2, global_limit=1)
    admission.try_acquire("busy")

    report = _run(store, admission=admission)

    assert report.deferred == ["org-a", "org-b"]
    assert report.processed == 0
    assert report.remaining == 3


# ---- failures and limits ------------------------------------------------------------------


def test_fetch_failure_is_reported_not_raised() -> None:
    store = MemoryStore([_tx(1)])
    store.fail_fetch = True

    report = _run(store, max_batches=2)

    assert report.error is not None
    assert report.error.startswith("failed to fetch uncategorized transactions")
    assert report.batches == 0
    assert report.remaining == 1


def test_deadline_stops_before_the_next_fetch() -> None:
    cfg = EngineConfig(
        queue=QueueConfig(batch_size=2, inter_batch_delay_sec=10.0, run_deadline_sec=5.0)
    )
    store = MemoryStore([_tx(i) for i in range(6)])

    report = _run(store, max_batches=3, config=cfg)

    assert report.timeout_reached
    assert report.batches == 1
    assert report.processed == 2
    assert report.remaining == 4
    assert store.fetches == 1


def test_transaction_failure_is_isolated() -> None:
    def flaky(tx: Transaction) -> CategorizationResult:
        if tx.id == "org-a-002":
            raise RuntimeError("boom")
        return classify(tx)

    store = MemoryStore([_tx(i) for i in range(1, 4)])

    report = _run(store, dispatcher=HybridDispatcher(None, classifier=flaky))

    org = report.result_for("org-a")
    assert org.processed == 2
    assert org.errors == ["org-a-002: boom"]
    assert report.remaining == 1


def test_audit_failure_is_recorded_but_counted() -> None:
    store = MemoryStore([_tx(1)])
    store.fail_decisions = True

    report = _run(store)

    org = report.result_for("org-a")
    assert org.processed == 1
    assert len(org.errors) == 1
    assert "audit write failed for tx org-a-001" in org.errors[0]


def test_empty_queue_runs_no_batches() -> None:
    report = _run(MemoryStore(), max_batches=5)
    assert report.batches == 0
    assert report.processed == 0
    assert report.to_dict()["results"] == []
