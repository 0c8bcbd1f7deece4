"""Public entrypoints for the ``hybrid_categorizer`` package.

- :func:`batch_run` categorizes queued transactions from storage. Job-level
  failures come back on :attr:`BatchRunReport.error`; it does not raise.
- :func:`evaluation_run` scores the engine over a labelled dataset. Malformed
  input raises :class:`~hybrid_categorizer.errors.ValidationError` before any
  processing.

The rate budget and admission controller are shared by every call in the
process, so concurrent invocations stay within one set of caps. They are
built from the first caller's limits; a later call passing different
limits keeps the shared ones (a warning is logged) until
:func:`reset_shared_services`.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Any

from .config import EngineConfig, load_config
from .dispatch import HybridDispatcher
from .errors import CategorizerError, ValidationError
from .evaluation import EvaluationOptions, EvaluationReport, LabTransaction, run_evaluation
from .logging_setup import get_logger
from .model_client import ModelClient
from .models import BatchRunReport, BatchRunRequest
from .orchestrator import run_batches
from .persistence import SqlTransactionStore, TransactionStore
from .rate_limit import AdmissionController, RateBudget
from .telemetry import LoggingTelemetry, TelemetrySink
from .waits import Clock, SystemClock

_logger = get_logger("hybrid_categorizer.api")

_SHARED_LOCK = threading.Lock()
_shared_budget: RateBudget | None = None
_shared_admission: AdmissionController | None = None
_shared_limits: tuple[object, ...] | None = None


def _limits(config: EngineConfig) -> tuple[object, ...]:
    return (config.rate_limit, config.queue.org_concurrency, config.queue.global_concurrency)


def _shared_services(config: EngineConfig, clock: Clock) -> tuple[RateBudget, AdmissionController]:
    global _shared_budget, _shared_admission, _shared_limits
    with _SHARED_LOCK:
        if _shared_budget is None or _shared_admission is None:
            _shared_budget = RateBudget(config.rate_limit, clock=clock)
            _shared_admission = AdmissionController.from_config(config.queue)
            _shared_limits = _limits(config)
        elif _limits(config) != _shared_limits:
            _logger.warning(
                "api:shared_limits_kept requested=%r shared=%r", _limits(config), _shared_limits
            )
        return _shared_budget, _shared_admission


def reset_shared_services() -> None:
    """Forget the process-wide rate budget and admission counters."""

    global _shared_budget, _shared_admission, _shared_limits
    with _SHARED_LOCK:
        _shared_budget = None
        _shared_admission = None
        _shared_limits = None


def batch_run(
    org_id: str | None = None,
    max_batches: int | None = None,
    *,
    database_url: str | None = None,
    config: EngineConfig | None = None,
    store: TransactionStore | None = None,
    model_client: ModelClient | None = None,
    admission: AdmissionController | None = None,
    clock: Clock | None = None,
    telemetry: TelemetrySink | None = None,
) -> BatchRunReport:
    """Categorize up to ``max_batches`` batches of uncategorized transactions.

    Parameters
    ----------
    org_id:
        Restrict the run to one organization; ``None`` processes all.
    max_batches:
        Requested batch count, clamped to ``1..20``; ``None`` means 1.
    database_url:
        Used for the default SQL store; falls back to ``$DATABASE_URL``.
    """

    clock = clock or SystemClock()
    sink = telemetry if telemetry is not None else LoggingTelemetry()
    try:
        cfg = config or load_config()
        budget, shared_admission = _shared_services(cfg, clock)
        client = model_client or ModelClient(config=cfg, rate_budget=budget, clock=clock)
        dispatcher = HybridDispatcher(client, config=cfg, telemetry=sink)
        return run_batches(
            BatchRunRequest(org_id=org_id, max_batches=max_batches),
            store=store or SqlTransactionStore(database_url),
            dispatcher=dispatcher,
            config=cfg,
            admission=admission or shared_admission,
            clock=clock,
            telemetry=sink,
        )
    except Exception as e:  # noqa: BLE001 - job-level errors are reported, not raised
        _logger.error("api:batch_run_failed error=%s", e.__class__.__name__)
        return BatchRunReport(error=str(e) or e.__class__.__name__)


def evaluation_run(
    dataset: Iterable[Mapping[str, Any] | LabTransaction],
    options: Mapping[str, Any] | EvaluationOptions | None = None,
    *,
    config: EngineConfig | None = None,
    model_client: ModelClient | None = None,
    clock: Clock | None = None,
    telemetry: TelemetrySink | None = None,
) -> EvaluationReport:
    """Run the engine over ``dataset`` and return results plus metrics.

    Raises
    ------
    ValidationError
        For malformed options, dataset items or ``CATEGORIZER_*`` settings.
    """

    try:
        cfg = config or load_config()
    except ValueError as e:
        raise ValidationError("invalid configuration", problems=[str(e)]) from e
    try:
        return run_evaluation(
            dataset,
            options,
            model_client=model_client,
            clock=clock,
            config=cfg,
            telemetry=telemetry,
        )
    except CategorizerError as e:
        _logger.warning("api:evaluation_rejected error=%s", e)
        raise


__all__ = ["batch_run", "evaluation_run", "reset_shared_services"]
