"""Offline evaluation runs ("categorizer lab").

A dataset of :class:`LabTransaction` items, optionally labelled with the
expected ``category_slug``, is categorized in one of three modes:

- ``pass1``: rules only (fully deterministic);
- ``pass2``: the model only;
- ``hybrid``: the live dispatcher with ``hybrid_threshold`` as the
  escalation threshold.

The dataset is processed in chunks of ``batch_size``; each chunk is mapped
with ``concurrency`` workers through :func:`~hybrid_categorizer.pmap.p_map`,
so results keep input order. Failures of individual transactions become
line items on the report; they are never raised.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from itertools import batched
from pathlib import Path
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import EngineConfig
from .dispatch import HybridDispatcher, Pass1Classifier
from .errors import ProgrammingError, ValidationError
from .logging_setup import get_logger
from .metrics import EvalResult, Metrics, compute_metrics
from .model_client import ModelClient
from .models import CategorizationResult, Transaction, parse_transaction
from .outcomes import Fallback, Fatal, Ok
from .pass1 import classify as pass1_classify
from .pmap import p_map
from .taxonomy import TaxonomyRegistry, default_registry
from .telemetry import TelemetrySink, emit
from .waits import Clock, SystemClock

_logger = get_logger("hybrid_categorizer.evaluation")

type EvaluationMode = Literal["pass1", "pass2", "hybrid"]
type EvaluationStatus = Literal["success", "partial", "failed"]
type DispatcherFactory = Callable[[float], HybridDispatcher]

LAB_ORG_ID: str = "lab"


# ---- Inputs ----------------------------------------------------------------------


class EvaluationOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: EvaluationMode = "pass1"
    batch_size: int = Field(default=10, ge=1, le=100)
    concurrency: int = Field(default=1, ge=1, le=5)
    hybrid_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    industry: str | None = None


class LabTransaction(BaseModel):
    """One evaluation input; ``category_slug`` is the optional ground truth."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str
    org_id: str = LAB_ORG_ID
    merchant_name: str | None = None
    description: str = ""
    mcc: str | None = None
    amount_cents: int
    currency: str = "USD"
    date: str | None = None
    category_slug: str | None = None

    @field_validator("amount_cents", mode="before")
    @classmethod
    def _amount_from_text(cls, v: Any) -> Any:
        # Datasets often carry amounts as strings to avoid float rounding.
        if isinstance(v, str):
            s = v.strip()
            if s.lstrip("-").isdigit():
                return int(s)
        return v

    @field_validator("category_slug", mode="before")
    @classmethod
    def _blank_label_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip().lower() if isinstance(v, str) else v

    def to_transaction(self) -> Transaction:
        return parse_transaction(
            {
                "id": self.id,
                "org_id": self.org_id,
                "merchant_name": self.merchant_name,
                "description": self.description,
                "mcc": self.mcc,
                "amount_cents": self.amount_cents,
                "currency": self.currency,
                "date": self.date or None,
            }
        )


def _problems(e: pydantic.ValidationError, prefix: str) -> list[str]:
    return [
        f"{prefix}{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in e.errors()
    ]


def parse_options(data: Mapping[str, Any] | EvaluationOptions | None) -> EvaluationOptions:
    if data is None:
        return EvaluationOptions()
    if isinstance(data, EvaluationOptions):
        return data
    try:
        return EvaluationOptions.model_validate(dict(data))
    except pydantic.ValidationError as e:
        raise ValidationError("invalid evaluation options", problems=_problems(e, "")) from e


def parse_dataset(items: Iterable[Mapping[str, Any] | LabTransaction]) -> list[LabTransaction]:
    """Validate every dataset item up front; collect all problems before raising."""

    out: list[LabTransaction] = []
    problems: list[str] = []
    seen: set[str] = set()
    for i, item in enumerate(items):
        try:
            lab = item if isinstance(item, LabTransaction) else LabTransaction.model_validate(item)
            # Surface Transaction-level problems (mcc, currency, ...) now too.
            lab.to_transaction()
        except pydantic.ValidationError as e:
            problems.extend(_problems(e, f"[{i}]."))
            continue
        except ValidationError as e:
            problems.extend(f"[{i}].{p}" for p in e.problems)
            continue
        if lab.id in seen:
            problems.append(f"[{i}].id: duplicate id {lab.id!r}")
            continue
        seen.add(lab.id)
        out.append(lab)
    if problems:
        raise ValidationError("invalid evaluation dataset", problems=problems)
    return out


def load_dataset_file(path: Path) -> list[LabTransaction]:
    """Read a JSON dataset: a list of items or ``{"dataset": [...]}``."""

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"dataset {path} is not valid JSON: {e}") from e
    if isinstance(data, Mapping):
        data = data.get("dataset")
    if not isinstance(data, list):
        raise ValidationError(f"dataset {path} must be a JSON array of transactions")
    return parse_dataset(data)


# ---- Report ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EvaluationReport:
    results: tuple[EvalResult, ...]
    metrics: Metrics
    status: EvaluationStatus
    errors: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "errors": list(self.errors),
            "results": [r.to_dict() for r in self.results],
            "metrics": self.metrics.to_dict(),
        }


def _status(results: Sequence[EvalResult]) -> EvaluationStatus:
    failures = sum(1 for r in results if r.error is not None)
    if failures == 0:
        return "success"
    if failures == len(results):
        return "failed"
    return "partial"


# ---- Runner ----------------------------------------------------------------------


class _Runner:
    def __init__(
        self,
        options: EvaluationOptions,
        *,
        classifier: Pass1Classifier,
        model_client: ModelClient | None,
        dispatcher: HybridDispatcher | None,
        clock: Clock,
    ) -> None:
        self.options = options
        self.classifier = classifier
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.clock = clock

    def _ms_since(self, start: float) -> float:
        return round((self.clock.monotonic() - start) * 1000.0, 3)

    def _pass2(self, tx: Transaction) -> CategorizationResult:
        if self.model_client is None:
            raise ProgrammingError(f"mode {self.options.mode!r} needs a model client")
        outcome = self.model_client.classify(tx, industry=self.options.industry)
        match outcome:
            case Ok(value=result) | Fallback(value=result):
                return result
            case Fatal(error=err):
                raise err
        raise TypeError(f"unexpected outcome {outcome!r}")

    def _hybrid(self, tx: Transaction) -> CategorizationResult:
        if self.dispatcher is None:
            raise ProgrammingError("hybrid mode needs a dispatcher")
        outcome = self.dispatcher.categorize(tx)
        match outcome:
            case Ok(value=dispatch) | Fallback(value=dispatch):
                return dispatch.result
        raise TypeError(f"unexpected outcome {outcome!r}")

    def run_one(self, lab: LabTransaction) -> EvalResult:
        mode = self.options.mode
        engine = "llm" if mode == "pass2" else "pass1"
        start = self.clock.monotonic()
        try:
            tx = lab.to_transaction()
            if mode == "pass1":
                result = self.classifier(tx)
            elif mode == "pass2":
                result = self._pass2(tx)
            else:
                result = self._hybrid(tx)
        except Exception as e:  # noqa: BLE001 - per-transaction errors are line items
            _logger.error(
                "evaluation:tx_failed tx_id=%s mode=%s error=%s", lab.id, mode, e.__class__.__name__
            )
            return EvalResult(
                id=lab.id, engine=engine, total_ms=self._ms_since(start), error=str(e) or repr(e)
            )

        total_ms = self._ms_since(start)
        return EvalResult(
            id=lab.id,
            engine=result.engine,
            predicted_category_id=result.category_id,
            predicted_category_slug=result.category_slug,
            confidence=result.confidence,
            rationale=result.rationale,
            total_ms=total_ms,
            pass1_ms=total_ms if mode == "pass1" else None,
            pass2_ms=total_ms if mode == "pass2" else None,
        )


def run_evaluation(
    dataset: Iterable[Mapping[str, Any] | LabTransaction],
    options: Mapping[str, Any] | EvaluationOptions | None = None,
    *,
    classifier: Pass1Classifier | None = None,
    model_client: ModelClient | None = None,
    dispatcher_factory: DispatcherFactory | None = None,
    clock: Clock | None = None,
    config: EngineConfig | None = None,
    registry: TaxonomyRegistry | None = None,
    telemetry: TelemetrySink | None = None,
) -> EvaluationReport:
    """Categorize ``dataset`` under ``options`` and compute metrics.

    Raises
    ------
    ValidationError
        When the dataset or options are malformed; nothing is processed.
    """

    opts = parse_options(options)
    items = parse_dataset(dataset)
    cfg = config or EngineConfig()
    reg = registry or default_registry()
    clock = clock or SystemClock()

    pass1: Pass1Classifier = classifier or (lambda tx: pass1_classify(tx, registry=reg))
    client = model_client
    dispatcher: HybridDispatcher | None = None
    if opts.mode in ("pass2", "hybrid") and client is None:
        client = ModelClient(config=cfg, registry=reg, clock=clock)
    if opts.mode == "hybrid":
        if dispatcher_factory is not None:
            dispatcher = dispatcher_factory(opts.hybrid_threshold)
        else:
            hybrid_cfg = replace(
                cfg, thresholds=replace(cfg.thresholds, escalation=opts.hybrid_threshold)
            )
            dispatcher = HybridDispatcher(
                client,
                config=hybrid_cfg,
                registry=reg,
                classifier=pass1,
                telemetry=telemetry,
                industry=opts.industry,
            )

    runner = _Runner(
        opts, classifier=pass1, model_client=client, dispatcher=dispatcher, clock=clock
    )
    _logger.info(
        "evaluation:start mode=%s size=%d batch_size=%d concurrency=%d",
        opts.mode,
        len(items),
        opts.batch_size,
        opts.concurrency,
    )

    results: list[EvalResult] = []
    for chunk in batched(items, opts.batch_size):
        results.extend(p_map(chunk, runner.run_one, concurrency=opts.concurrency))

    metrics = compute_metrics(items, results)
    errors = tuple(f"{r.id}: {r.error}" for r in results if r.error is not None)
    status = _status(results)
    _logger.info(
        "evaluation:done mode=%s status=%s count=%d errors=%d",
        opts.mode,
        status,
        len(results),
        len(errors),
    )
    emit(
        telemetry,
        "evaluation_completed",
        mode=opts.mode,
        status=status,
        count=len(results),
        errors=len(errors),
    )
    return EvaluationReport(results=tuple(results), metrics=metrics, status=status, errors=errors)


__all__ = [
    "EvaluationMode",
    "EvaluationOptions",
    "EvaluationReport",
    "LabTransaction",
    "load_dataset_file",
    "parse_dataset",
    "parse_options",
    "run_evaluation",
]
