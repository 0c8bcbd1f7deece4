"""Explicit engine configuration.

Every tunable the engine recognizes is a field on one of the frozen
dataclasses below; components receive the relevant section by reference.
``load_config()`` overlays ``CATEGORIZER_*`` environment variables on top of
the defaults so deployments can tune thresholds without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace

# A single named constant gates both "skip Pass-2" and "auto-apply without
# review"; the two thresholds below default to it but can be tuned apart.
DEFAULT_CONFIDENCE_THRESHOLD: float = 0.95

FALLBACK_CATEGORY_SLUG: str = "miscellaneous"


@dataclass(frozen=True, slots=True)
class ThresholdConfig:
    escalation: float = DEFAULT_CONFIDENCE_THRESHOLD
    auto_apply: float = DEFAULT_CONFIDENCE_THRESHOLD
    # Confidence stamped on the forced fallback when both passes fail.
    fallback_confidence: float = 0.3


@dataclass(frozen=True, slots=True)
class GuardrailConfig:
    enforce_mcc_compatibility: bool = True
    min_confidence: float = 0.60
    enable_amount_checks: bool = True


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    calls_per_window: int = 15
    window_sec: float = 60.0


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    multiplier: float = 2.0
    max_delay_sec: float = 10.0
    jitter_pct: float = 0.0


@dataclass(frozen=True, slots=True)
class QueueConfig:
    org_concurrency: int = 2
    global_concurrency: int = 5
    batch_size: int = 10
    inter_batch_delay_sec: float = 1.0
    default_max_batches: int = 1
    max_batches_limit: int = 20
    # Wall-clock budget for one batch run; ``None`` disables the deadline.
    run_deadline_sec: float | None = 55.0


@dataclass(frozen=True, slots=True)
class ModelConfig:
    model: str = "gpt-5-mini"
    industry: str = "ecommerce"
    request_timeout_sec: float | None = None
    # Confidence used for degraded model results (errors, unparsable text).
    degraded_confidence: float = 0.5
    # Confidence used when the model names a category outside the taxonomy.
    unknown_slug_confidence: float = 0.3


@dataclass(frozen=True, slots=True)
class EngineConfig:
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    guardrails: GuardrailConfig = field(default_factory=GuardrailConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    model: ModelConfig = field(default_factory=ModelConfig)


# ---- Environment overlay ----------------------------------------------------


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return raw.strip() if raw and raw.strip() else default


def load_config(base: EngineConfig | None = None) -> EngineConfig:
    """Return ``base`` (or the defaults) with ``CATEGORIZER_*`` env overrides.

    Recognized variables
    --------------------
    ``CATEGORIZER_ESCALATION_THRESHOLD``, ``CATEGORIZER_AUTO_APPLY_THRESHOLD``,
    ``CATEGORIZER_MIN_CONFIDENCE``, ``CATEGORIZER_CALLS_PER_MINUTE``,
    ``CATEGORIZER_ORG_CONCURRENCY``, ``CATEGORIZER_GLOBAL_CONCURRENCY``,
    ``CATEGORIZER_BATCH_SIZE``, ``CATEGORIZER_RUN_DEADLINE_SEC``,
    ``CATEGORIZER_MODEL``, ``CATEGORIZER_INDUSTRY``.
    """

    cfg = base or EngineConfig()
    thresholds = replace(
        cfg.thresholds,
        escalation=_env_float("CATEGORIZER_ESCALATION_THRESHOLD", cfg.thresholds.escalation),
        auto_apply=_env_float("CATEGORIZER_AUTO_APPLY_THRESHOLD", cfg.thresholds.auto_apply),
    )
    guardrails = replace(
        cfg.guardrails,
        min_confidence=_env_float("CATEGORIZER_MIN_CONFIDENCE", cfg.guardrails.min_confidence),
    )
    rate_limit = replace(
        cfg.rate_limit,
        calls_per_window=_env_int("CATEGORIZER_CALLS_PER_MINUTE", cfg.rate_limit.calls_per_window),
    )
    deadline = cfg.queue.run_deadline_sec
    deadline_raw = (os.getenv("CATEGORIZER_RUN_DEADLINE_SEC") or "").strip()
    if deadline_raw.lower() in {"none", "off"}:
        deadline = None
    elif deadline_raw:
        deadline = _env_float("CATEGORIZER_RUN_DEADLINE_SEC", 0.0)
    queue = replace(
        cfg.queue,
        org_concurrency=_env_int("CATEGORIZER_ORG_CONCURRENCY", cfg.queue.org_concurrency),
        global_concurrency=_env_int("CATEGORIZER_GLOBAL_CONCURRENCY", cfg.queue.global_concurrency),
        batch_size=_env_int("CATEGORIZER_BATCH_SIZE", cfg.queue.batch_size),
        run_deadline_sec=deadline,
    )
    model = replace(
        cfg.model,
        model=_env_str("CATEGORIZER_MODEL", cfg.model.model),
        industry=_env_str("CATEGORIZER_INDUSTRY", cfg.model.industry),
    )
    return replace(
        cfg,
        thresholds=thresholds,
        guardrails=guardrails,
        rate_limit=rate_limit,
        queue=queue,
        model=model,
    )


__all__ = [
    "DEFAULT_CONFIDENCE_THRESHOLD",
    "FALLBACK_CATEGORY_SLUG",
    "EngineConfig",
    "GuardrailConfig",
    "ModelConfig",
    "QueueConfig",
    "RateLimitConfig",
    "RetryConfig",
    "ThresholdConfig",
    "load_config",
]
