from __future__ import annotations

import datetime as dt
import json
from pathlib import Path

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.finance import CategoryRow, TransactionRow
from hybrid_categorizer.models import Decision, RejectedRow, Transaction
from hybrid_categorizer.persistence import SqlTransactionStore
from hybrid_categorizer.seed_taxonomy import main as seed_main
from hybrid_categorizer.seed_taxonomy import reseed_taxonomy
from hybrid_categorizer.taxonomy import DEFAULT_SEED_PATH, default_registry
from tests.helpers.db import (
    bootstrap_sqlite_db,
    fetch_decisions,
    fetch_transaction,
    insert_transactions,
)


def _category_count(url: str, *, active: bool | None = None) -> int:
    stmt = select(func.count()).select_from(CategoryRow)
    if active is not None:
        stmt = stmt.where(CategoryRow.is_active.is_(active))
    with session_scope(database_url=url) as s:
        return int(s.execute(stmt).scalar_one())


# ---- taxonomy seeding -------------------------------------------------------------------


def test_seed_writes_every_category(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "t.sqlite", seed=False)

    count = reseed_taxonomy(database_url=url)

    assert count == len(default_registry())
    assert _category_count(url) == count
    with session_scope(database_url=url) as s:
        row = s.execute(select(CategoryRow).where(CategoryRow.slug == "labor")).scalar_one()
        parent = s.get(CategoryRow, row.parent_id)
        assert parent is not None and parent.tier == 1
        assert row.tier == 2


def test_reseed_is_idempotent_and_deactivates_removed_categories(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "t.sqlite")
    full = _category_count(url)

    seed = json.loads(DEFAULT_SEED_PATH.read_text(encoding="utf-8"))
    for parent in seed:
        parent["children"] = [c for c in parent.get("children", []) if c["slug"] != "insurance"]
    smaller = tmp_path / "smaller.json"
    smaller.write_text(json.dumps(seed), encoding="utf-8")

    assert reseed_taxonomy(database_url=url) == full
    reseed_taxonomy(database_url=url, file=smaller)

    assert _category_count(url) == full
    assert _category_count(url, active=False) == 1


def test_seed_cli_entrypoint(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "t.sqlite", seed=False)
    assert seed_main(["--database-url", url]) == 0
    assert _category_count(url) == len(default_registry())


# ---- transaction store ---------------------------------------------------------------------


@pytest.fixture
def store_url(tmp_path: Path) -> str:
    url = bootstrap_sqlite_db(tmp_path / "store.sqlite")
    insert_transactions(
        url,
        [
            {"id": "b-2", "org_id": "org-b", "merchant_name": "Slack", "mcc": "7372"},
            {
                "id": "a-1",
                "org_id": "org-a",
                "description": "office rent",
                "amount_cents": -250_000,
            },
            {"id": "a-2", "org_id": "org-a", "date": dt.date(2026, 3, 1)},
        ],
    )
    return url


def test_fetch_is_oldest_first_and_filters_by_org(store_url: str) -> None:
    store = SqlTransactionStore(store_url)

    assert [t.id for t in store.fetch_uncategorized(None, 10)] == ["b-2", "a-1", "a-2"]
    assert [t.id for t in store.fetch_uncategorized("org-a", 1)] == ["a-1"]
    assert store.fetch_uncategorized(None, 0) == []
    assert store.count_uncategorized("org-a") == 2

    tx = store.fetch_uncategorized("org-b", 10)[0]
    assert tx.mcc == "7372"
    assert tx.amount_cents == -1000


def test_update_categorization_removes_from_queue(store_url: str) -> None:
    store = SqlTransactionStore(store_url)
    category_id = default_registry().resolve_by_slug("rent_utilities").id

    store.update_categorization(
        "a-1",
        category_id=category_id,
        confidence=0.88,
        needs_review=True,
        attributes={"utility_type": "rent"},
    )

    row = fetch_transaction(store_url, "a-1")
    assert row.category_id == category_id
    assert row.needs_review is True
    assert row.reviewed is False
    assert row.categorized_at is not None
    assert row.attributes == {"utility_type": "rent"}
    assert store.count_uncategorized("org-a") == 1


def test_update_unknown_transaction_raises(store_url: str) -> None:
    with pytest.raises(LookupError):
        SqlTransactionStore(store_url).update_categorization(
            "missing", category_id="x", confidence=None, needs_review=True, attributes={}
        )


def test_insert_decision_appends(store_url: str) -> None:
    store = SqlTransactionStore(store_url)
    category_id = default_registry().resolve_by_slug("software_subscriptions").id
    decision = Decision(
        tx_id="b-2",
        org_id="org-b",
        category_id=category_id,
        confidence=0.95,
        source="pass1",
        rationale=("vendor: Slack",),
        created_at=dt.datetime(2026, 2, 1, tzinfo=dt.UTC),
    )

    store.insert_decision(decision)
    store.insert_decision(decision)

    rows = fetch_decisions(store_url, "b-2")
    assert len(rows) == 2
    assert rows[0].rationale == ["vendor: Slack"]
    assert rows[0].source == "pass1"


def test_invalid_stored_rows_come_back_as_rejected_items(store_url: str) -> None:
    with session_scope(database_url=store_url) as s:
        s.get(TransactionRow, "a-1").currency = "DOLLARS"  # type: ignore[union-attr]

    items = SqlTransactionStore(store_url).fetch_uncategorized("org-a", 10)

    assert [t.id for t in items] == ["a-1", "a-2"]
    rejected, valid = items
    assert isinstance(rejected, RejectedRow)
    assert rejected.org_id == "org-a"
    assert rejected.problems == ("currency: Value error, currency must be a 3-letter code",)
    assert isinstance(valid, Transaction)
