"""Evaluation metrics over a set of categorization results.

Everything here is pure: the same dataset and results always produce the
same :class:`Metrics`, so the output can be diffed in CI-style regression
checks.

Conventions
-----------
- Percentiles use nearest rank on the sorted sample: ``sorted[ceil(p*n) - 1]``
  clamped to the sample bounds. An empty sample yields zeros.
- Confidence buckets are the ten ranges ``"0.0-0.1"`` .. ``"0.9-1.0"``. A
  value on an edge belongs to the bucket whose upper edge equals it, so
  ``0.3`` lands in ``"0.2-0.3"``; ``0.0`` lands in the first bucket.
- Accuracy, per-category scores, the confusion matrix and calibration only
  consider results with no error, a predicted label and a ground-truth label.
"""

from __future__ import annotations

import csv
import io
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import Engine

HISTOGRAM_BUCKETS: int = 10
# Flat per-call estimate used for the cost summary.
COST_PER_LLM_CALL_USD: float = 0.001


# ---- Inputs ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EvalResult:
    """Outcome of categorizing one evaluation transaction."""

    id: str
    engine: Engine
    predicted_category_id: str | None = None
    predicted_category_slug: str | None = None
    confidence: float | None = None
    rationale: tuple[str, ...] = ()
    total_ms: float = 0.0
    pass1_ms: float | None = None
    pass2_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "predicted_category_id": self.predicted_category_id,
            "predicted_category_slug": self.predicted_category_slug,
            "confidence": self.confidence,
            "rationale": list(self.rationale),
            "engine": self.engine,
            "timings": {
                "total_ms": self.total_ms,
                "pass1_ms": self.pass1_ms,
                "pass2_ms": self.pass2_ms,
            },
            "error": self.error,
        }


# ---- Outputs ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Totals:
    count: int
    errors: int
    pass1_only: int
    llm_used: int


@dataclass(frozen=True, slots=True)
class LatencyStats:
    mean: float
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True, slots=True)
class HistogramBin:
    bin: str
    count: int


@dataclass(frozen=True, slots=True)
class ConfidenceStats:
    mean: float
    histogram: tuple[HistogramBin, ...]


@dataclass(frozen=True, slots=True)
class CategoryStats:
    category: str
    accuracy: float
    precision: float
    recall: float
    f1: float
    support: int


@dataclass(frozen=True, slots=True)
class AccuracyStats:
    overall: float
    correct: int
    total: int
    labels: tuple[str, ...]
    per_category: tuple[CategoryStats, ...]
    # confusion_matrix[true_index][predicted_index]
    confusion_matrix: tuple[tuple[int, ...], ...]


@dataclass(frozen=True, slots=True)
class CalibrationBin:
    bin: str
    avg_confidence: float
    accuracy: float
    count: int


@dataclass(frozen=True, slots=True)
class CostStats:
    calls: int
    estimated_usd: float


@dataclass(frozen=True, slots=True)
class Metrics:
    totals: Totals
    latency: LatencyStats
    confidence: ConfidenceStats
    accuracy: AccuracyStats | None
    calibration: tuple[CalibrationBin, ...] = ()
    cost: CostStats = field(default_factory=lambda: CostStats(calls=0, estimated_usd=0.0))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "totals": {
                "count": self.totals.count,
                "errors": self.totals.errors,
                "pass1_only": self.totals.pass1_only,
                "llm_used": self.totals.llm_used,
            },
            "latency": {
                "mean": self.latency.mean,
                "p50": self.latency.p50,
                "p95": self.latency.p95,
                "p99": self.latency.p99,
            },
            "confidence": {
                "mean": self.confidence.mean,
                "histogram": [{"bin": b.bin, "count": b.count} for b in self.confidence.histogram],
            },
            "accuracy": None,
            "calibration": [
                {
                    "bin": c.bin,
                    "avg_confidence": c.avg_confidence,
                    "accuracy": c.accuracy,
                    "count": c.count,
                }
                for c in self.calibration
            ],
            "cost": {"calls": self.cost.calls, "estimated_usd": self.cost.estimated_usd},
        }
        if self.accuracy is not None:
            out["accuracy"] = {
                "overall": self.accuracy.overall,
                "correct": self.accuracy.correct,
                "total": self.accuracy.total,
                "labels": list(self.accuracy.labels),
                "per_category": [
                    {
                        "category": s.category,
                        "accuracy": s.accuracy,
                        "precision": s.precision,
                        "recall": s.recall,
                        "f1": s.f1,
                        "support": s.support,
                    }
                    for s in self.accuracy.per_category
                ],
                "confusion_matrix": [list(row) for row in self.accuracy.confusion_matrix],
            }
        return out


# ---- Building blocks -------------------------------------------------------------


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an already sorted sample."""

    n = len(sorted_values)
    if n == 0:
        return 0.0
    index = math.ceil(p * n) - 1
    index = max(0, min(index, n - 1))
    return float(sorted_values[index])


def bucket_label(index: int) -> str:
    return f"{index / HISTOGRAM_BUCKETS:.1f}-{(index + 1) / HISTOGRAM_BUCKETS:.1f}"


def bucket_index(confidence: float) -> int:
    """Bucket for ``confidence``; edges belong to the bucket below them."""

    # Rounding keeps values like 0.3 (0.30000000000000004 * 10) on their edge.
    scaled = round(confidence * HISTOGRAM_BUCKETS, 9)
    return max(0, min(HISTOGRAM_BUCKETS - 1, math.ceil(scaled) - 1))


def confidence_histogram(values: Iterable[float]) -> tuple[HistogramBin, ...]:
    counts = [0] * HISTOGRAM_BUCKETS
    for v in values:
        counts[bucket_index(v)] += 1
    return tuple(HistogramBin(bin=bucket_label(i), count=c) for i, c in enumerate(counts))


def _ground_truth(dataset: Iterable[Any]) -> dict[str, str]:
    truth: dict[str, str] = {}
    for item in dataset:
        if isinstance(item, Mapping):
            tx_id, label = item.get("id"), item.get("category_slug")
        else:
            tx_id, label = getattr(item, "id", None), getattr(item, "category_slug", None)
        if tx_id is not None and label:
            truth[str(tx_id)] = str(label)
    return truth


def _scored(results: Sequence[EvalResult], truth: Mapping[str, str]) -> list[EvalResult]:
    return [
        r
        for r in results
        if r.error is None and r.predicted_category_slug is not None and r.id in truth
    ]


def _safe_ratio(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def compute_totals(results: Sequence[EvalResult]) -> Totals:
    return Totals(
        count=len(results),
        errors=sum(1 for r in results if r.error is not None),
        pass1_only=sum(1 for r in results if r.engine == "pass1"),
        llm_used=sum(1 for r in results if r.engine == "llm"),
    )


def compute_latency(results: Sequence[EvalResult]) -> LatencyStats:
    timings = sorted(r.total_ms for r in results if r.error is None)
    if not timings:
        return LatencyStats(mean=0.0, p50=0.0, p95=0.0, p99=0.0)
    return LatencyStats(
        mean=sum(timings) / len(timings),
        p50=percentile(timings, 0.50),
        p95=percentile(timings, 0.95),
        p99=percentile(timings, 0.99),
    )


def compute_confidence(results: Sequence[EvalResult]) -> ConfidenceStats:
    values = [r.confidence for r in results if r.error is None and r.confidence is not None]
    mean = round(sum(values) / len(values), 2) if values else 0.0
    return ConfidenceStats(mean=mean, histogram=confidence_histogram(values))


def compute_accuracy(
    results: Sequence[EvalResult], truth: Mapping[str, str]
) -> AccuracyStats | None:
    scored = _scored(results, truth)
    if not scored:
        return None

    pairs = [(truth[r.id], r.predicted_category_slug or "") for r in scored]
    labels = tuple(sorted({t for t, _ in pairs} | {p for _, p in pairs}))
    position = {label: i for i, label in enumerate(labels)}

    matrix = [[0] * len(labels) for _ in labels]
    for t, p in pairs:
        matrix[position[t]][position[p]] += 1

    per_category: list[CategoryStats] = []
    for label in labels:
        i = position[label]
        tp = matrix[i][i]
        support = sum(matrix[i])
        predicted = sum(row[i] for row in matrix)
        precision = _safe_ratio(tp, predicted)
        recall = _safe_ratio(tp, support)
        f1 = _safe_ratio(2 * precision * recall, precision + recall)
        per_category.append(
            CategoryStats(
                category=label,
                accuracy=_safe_ratio(tp, support),
                precision=precision,
                recall=recall,
                f1=f1,
                support=support,
            )
        )

    correct = sum(matrix[i][i] for i in range(len(labels)))
    return AccuracyStats(
        overall=_safe_ratio(correct, len(pairs)),
        correct=correct,
        total=len(pairs),
        labels=labels,
        per_category=tuple(per_category),
        confusion_matrix=tuple(tuple(row) for row in matrix),
    )


def compute_calibration(
    results: Sequence[EvalResult], truth: Mapping[str, str]
) -> tuple[CalibrationBin, ...]:
    buckets: list[list[EvalResult]] = [[] for _ in range(HISTOGRAM_BUCKETS)]
    for r in _scored(results, truth):
        if r.confidence is None:
            continue
        buckets[bucket_index(r.confidence)].append(r)

    out: list[CalibrationBin] = []
    for i, members in enumerate(buckets):
        if not members:
            continue
        correct = sum(1 for r in members if r.predicted_category_slug == truth[r.id])
        out.append(
            CalibrationBin(
                bin=bucket_label(i),
                avg_confidence=sum(r.confidence or 0.0 for r in members) / len(members),
                accuracy=correct / len(members),
                count=len(members),
            )
        )
    return tuple(out)


def compute_cost(results: Sequence[EvalResult]) -> CostStats:
    calls = sum(1 for r in results if r.engine == "llm")
    return CostStats(calls=calls, estimated_usd=round(calls * COST_PER_LLM_CALL_USD, 6))


def compute_metrics(dataset: Iterable[Any], results: Sequence[EvalResult]) -> Metrics:
    """Aggregate ``results`` (optionally scored against ``dataset`` labels).

    ``dataset`` items may be mappings or objects; an item contributes ground
    truth when it has both ``id`` and a non-empty ``category_slug``.
    """

    truth = _ground_truth(dataset)
    return Metrics(
        totals=compute_totals(results),
        latency=compute_latency(results),
        confidence=compute_confidence(results),
        accuracy=compute_accuracy(results, truth),
        calibration=compute_calibration(results, truth),
        cost=compute_cost(results),
    )


# ---- Export ----------------------------------------------------------------------


def metrics_to_csv(metrics: Metrics) -> str:
    """Render a summary table and, when scored, a per-category table as CSV."""

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Total Transactions", metrics.totals.count])
    writer.writerow(["Errors", metrics.totals.errors])
    writer.writerow(["Pass1 Only", metrics.totals.pass1_only])
    writer.writerow(["LLM Used", metrics.totals.llm_used])
    writer.writerow(["Mean Latency (ms)", f"{metrics.latency.mean:.2f}"])
    writer.writerow(["P50 Latency (ms)", f"{metrics.latency.p50:.2f}"])
    writer.writerow(["P95 Latency (ms)", f"{metrics.latency.p95:.2f}"])
    writer.writerow(["P99 Latency (ms)", f"{metrics.latency.p99:.2f}"])
    writer.writerow(["Mean Confidence", f"{metrics.confidence.mean:.3f}"])
    if metrics.accuracy is not None:
        writer.writerow(["Overall Accuracy", f"{metrics.accuracy.overall:.3f}"])
    writer.writerow(["Estimated Cost (USD)", f"{metrics.cost.estimated_usd:.4f}"])
    writer.writerow(["LLM Calls", metrics.cost.calls])

    if metrics.accuracy is not None and metrics.accuracy.per_category:
        writer.writerow([])
        writer.writerow(["Category", "Accuracy", "Precision", "Recall", "F1", "Support"])
        for s in metrics.accuracy.per_category:
            writer.writerow(
                [
                    s.category,
                    f"{s.accuracy:.3f}",
                    f"{s.precision:.3f}",
                    f"{s.recall:.3f}",
                    f"{s.f1:.3f}",
                    s.support,
                ]
            )
    return buf.getvalue()


__all__ = [
    "AccuracyStats",
    "CalibrationBin",
    "CategoryStats",
    "ConfidenceStats",
    "CostStats",
    "EvalResult",
    "HistogramBin",
    "LatencyStats",
    "Metrics",
    "Totals",
    "bucket_index",
    "bucket_label",
    "compute_metrics",
    "confidence_histogram",
    "metrics_to_csv",
    "percentile",
]
