"""Batch/queue orchestration for the live categorization path.

One call to :func:`run_batches` drains up to ``max_batches`` bounded batches
of uncategorized transactions (oldest first), categorizes each through the
:class:`~hybrid_categorizer.dispatch.HybridDispatcher` and applies the result.

Ordering and limits
-------------------
- Transactions are grouped by organization in fetch order; within an org
  they are processed strictly sequentially.
- Each org group must be admitted by the
  :class:`~hybrid_categorizer.rate_limit.AdmissionController`. An org at its
  own cap is deferred; hitting the global cap defers that org and every org
  after it in the batch. Deferred transactions stay uncategorized and are
  picked up again by a later fetch.
- Rows the store could not validate arrive as
  :class:`~hybrid_categorizer.models.RejectedRow` items. They still count
  toward the batch size, are moved off the queue onto the fallback category
  with review forced, and are listed in the org's ``errors``.
- A deadline is checked before every fetch; cancellation only happens at
  batch boundaries.
- After a full batch, when another batch is allowed, the run pauses for
  ``inter_batch_delay_sec`` through the wait primitive.
"""

from __future__ import annotations

import time
from collections.abc import Sequence

from .apply import decide_and_apply
from .config import EngineConfig
from .dispatch import HybridDispatcher
from .logging_setup import get_logger
from .models import (
    BatchRunReport,
    BatchRunRequest,
    OrgResult,
    QueueItem,
    RejectedRow,
)
from .outcomes import Fallback, Ok
from .persistence import TransactionStore
from .rate_limit import Admission, AdmissionController
from .telemetry import TelemetrySink, emit
from .waits import Clock, SystemClock, pause

_logger = get_logger("hybrid_categorizer.orchestrator")


def clamp_max_batches(requested: int | None, *, default: int, limit: int) -> int:
    """Clamp ``requested`` to ``1..limit``; ``None`` means ``default``."""

    if requested is None:
        return default
    clamped = min(max(1, int(requested)), limit)
    if clamped != requested:
        _logger.warning(
            "orchestrator:max_batches_clamped requested=%s used=%d", requested, clamped
        )
    return clamped


def group_by_org(batch: Sequence[QueueItem]) -> dict[str, list[QueueItem]]:
    """Group ``batch`` by ``org_id`` preserving first-seen org order and tx order."""

    groups: dict[str, list[QueueItem]] = {}
    for tx in batch:
        groups.setdefault(tx.org_id, []).append(tx)
    return groups


def _reject(
    row: RejectedRow, result: OrgResult, *, store: TransactionStore, fallback_id: str
) -> None:
    # Park the row on the fallback category so the next fetch moves past it.
    store.update_categorization(
        row.id, category_id=fallback_id, confidence=None, needs_review=True, attributes={}
    )
    _logger.warning(
        "orchestrator:row_rejected tx_id=%s org_id=%s problems=%d",
        row.id,
        row.org_id,
        len(row.problems),
    )
    result.rejected += 1
    result.errors.append(f"{row.id}: invalid transaction: {'; '.join(row.problems)}")


def _process_org(
    org_txs: Sequence[QueueItem],
    result: OrgResult,
    *,
    store: TransactionStore,
    dispatcher: HybridDispatcher,
    auto_apply_threshold: float,
) -> None:
    for tx in org_txs:
        try:
            if isinstance(tx, RejectedRow):
                _reject(tx, result, store=store, fallback_id=dispatcher.registry.fallback.id)
                continue
            outcome = dispatcher.categorize(tx)
            match outcome:
                case Ok(value=dispatch):
                    pass
                case Fallback(value=dispatch):
                    result.fallback_count += 1
            receipt = decide_and_apply(
                store, tx, dispatch, auto_apply_threshold=auto_apply_threshold
            )
        except Exception as e:  # noqa: BLE001 - isolate per-transaction failures
            _logger.error(
                "orchestrator:tx_failed tx_id=%s org_id=%s error=%s",
                tx.id,
                tx.org_id,
                e.__class__.__name__,
            )
            result.errors.append(f"{tx.id}: {e}")
            continue
        if receipt.audit_error is not None:
            result.errors.append(f"{tx.id}: {receipt.audit_error}")
        if receipt.needs_review:
            result.marked_for_review += 1
        else:
            result.auto_applied += 1
        result.processed += 1


def _defer(report: BatchRunReport, org_id: str, reason: Admission) -> None:
    _logger.info("orchestrator:org_deferred org_id=%s reason=%s", org_id, reason.value)
    if org_id not in report.deferred:
        report.deferred.append(org_id)


def run_batches(
    request: BatchRunRequest,
    *,
    store: TransactionStore,
    dispatcher: HybridDispatcher,
    config: EngineConfig | None = None,
    admission: AdmissionController | None = None,
    clock: Clock | None = None,
    telemetry: TelemetrySink | None = None,
) -> BatchRunReport:
    """Run up to ``request.max_batches`` batches and report what happened.

    Never raises for storage or per-transaction failures: a failed fetch ends
    the run with ``report.error`` set, and work already applied is kept.
    """

    cfg = config or EngineConfig()
    queue = cfg.queue
    clock = clock or SystemClock()
    admission = admission or AdmissionController.from_config(queue)
    max_batches = clamp_max_batches(
        request.max_batches, default=queue.default_max_batches, limit=queue.max_batches_limit
    )
    report = BatchRunReport(max_batches=max_batches)
    deadline = (
        None if queue.run_deadline_sec is None else clock.monotonic() + queue.run_deadline_sec
    )
    started = time.perf_counter()

    _logger.info(
        "orchestrator:start org_id=%s max_batches=%d batch_size=%d",
        request.org_id,
        max_batches,
        queue.batch_size,
    )

    while report.batches < max_batches:
        if deadline is not None and clock.monotonic() >= deadline:
            report.timeout_reached = True
            _logger.warning("orchestrator:deadline_reached batches=%d", report.batches)
            break

        try:
            batch = store.fetch_uncategorized(request.org_id, queue.batch_size)
        except Exception as e:  # noqa: BLE001 - job-level failure goes on the report
            report.error = f"failed to fetch uncategorized transactions: {e}"
            _logger.error("orchestrator:fetch_failed error=%s", e.__class__.__name__)
            break
        if not batch:
            break

        report.batches += 1
        _logger.info("orchestrator:batch batch=%d size=%d", report.batches, len(batch))

        global_capped = False
        for org_id, org_txs in group_by_org(batch).items():
            if global_capped:
                _defer(report, org_id, Admission.GLOBAL_CAP)
                continue
            admitted = admission.try_acquire(org_id)
            if admitted is not Admission.ADMITTED:
                global_capped = admitted is Admission.GLOBAL_CAP
                _defer(report, org_id, admitted)
                continue

            result = report.result_for(org_id)
            before = result.processed
            try:
                _process_org(
                    org_txs,
                    result,
                    store=store,
                    dispatcher=dispatcher,
                    auto_apply_threshold=cfg.thresholds.auto_apply,
                )
            except Exception as e:  # noqa: BLE001 - an org failure stays with that org
                _logger.error(
                    "orchestrator:org_failed org_id=%s error=%s", org_id, e.__class__.__name__
                )
                result.errors.append(f"org {org_id}: {e}")
            finally:
                admission.release(org_id)
            report.processed += result.processed - before

        if len(batch) < queue.batch_size:
            break
        if report.batches < max_batches:
            pause(clock, queue.inter_batch_delay_sec, reason="inter_batch")

    try:
        report.remaining = store.count_uncategorized(request.org_id)
    except Exception as e:  # noqa: BLE001
        _logger.error("orchestrator:count_failed error=%s", e.__class__.__name__)
        if report.error is None:
            report.error = f"failed to count remaining transactions: {e}"

    dt_ms = (time.perf_counter() - started) * 1000.0
    _logger.info(
        (
            "orchestrator:done batches=%d processed=%d remaining=%d "
            "timeout_reached=%s deferred=%d elapsed_ms=%.2f"
        ),
        report.batches,
        report.processed,
        report.remaining,
        report.timeout_reached,
        len(report.deferred),
        dt_ms,
    )
    emit(
        telemetry,
        "batch_run_completed",
        batches=report.batches,
        processed=report.processed,
        remaining=report.remaining,
        timeout_reached=report.timeout_reached,
        error=report.error,
    )
    return report


__all__ = ["clamp_max_batches", "group_by_org", "run_batches"]
