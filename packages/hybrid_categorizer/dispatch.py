"""Hybrid arbitration between Pass-1 rules and Pass-2 model categorization.

State machine
-------------
``PASS1_DECIDED``
    Pass-1 produced a category with confidence at or above the escalation
    threshold; the model is not called.
``PASS2_ESCALATED``
    Pass-1 produced nothing, or too little confidence. The model is asked; its
    answer wins only when strictly more confident than Pass-1's. A degraded
    answer (the client's ``miscellaneous`` placeholder after a provider,
    parse or slug failure) is kept on ``Dispatch.pass2`` for the record but
    never competes.

When neither pass yields a category the ``miscellaneous`` fallback is
forced at a fixed low confidence, review is forced, the fallback counter is
incremented and the outcome is ``Fallback(dispatch, FallbackExhausted)``.
Guardrails always run on the chosen category.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from . import guardrails
from .config import EngineConfig
from .errors import FallbackExhausted
from .guardrails import GuardrailOutcome
from .logging_setup import get_logger
from .model_client import ModelClient
from .models import CategorizationResult, Transaction
from .outcomes import Fallback, Fatal, Ok
from .pass1 import classify as pass1_classify
from .taxonomy import TaxonomyRegistry, default_registry
from .telemetry import TelemetrySink, emit

_logger = get_logger("hybrid_categorizer.dispatch")

FALLBACK_RATIONALE: tuple[str, ...] = (
    "Pass-1 produced no category",
    "Pass-2 produced no category",
    "Applied fallback category 'miscellaneous' for manual review",
)

type Pass1Classifier = Callable[[Transaction], CategorizationResult]


class DispatchState(Enum):
    PASS1_DECIDED = "pass1_decided"
    PASS2_ESCALATED = "pass2_escalated"


@dataclass(frozen=True, slots=True)
class Dispatch:
    """Final decision for one transaction plus how it was reached."""

    tx_id: str
    state: DispatchState
    result: CategorizationResult
    pass1: CategorizationResult
    pass2: CategorizationResult | None
    guardrail: GuardrailOutcome
    fallback_used: bool = False

    @property
    def force_review(self) -> bool:
        return self.fallback_used or self.guardrail.force_review


class HybridDispatcher:
    """Run Pass-1, escalate to the model when needed and police the result.

    Parameters
    ----------
    model_client:
        Pass-2 client. May be ``None`` to run rules only; escalations then
        behave as if the model produced no category.
    config:
        Engine configuration; ``thresholds.escalation`` gates Pass-2.
    classifier:
        Pass-1 callable, defaults to :func:`hybrid_categorizer.pass1.classify`
        bound to ``registry``.
    """

    def __init__(
        self,
        model_client: ModelClient | None,
        *,
        config: EngineConfig | None = None,
        registry: TaxonomyRegistry | None = None,
        classifier: Pass1Classifier | None = None,
        telemetry: TelemetrySink | None = None,
        industry: str | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._registry = registry or default_registry()
        self._model_client = model_client
        self._classifier: Pass1Classifier = classifier or (
            lambda tx: pass1_classify(tx, registry=self._registry)
        )
        self._telemetry = telemetry
        self._industry = industry
        self._lock = threading.Lock()
        self._fallback_count = 0

    @property
    def fallback_count(self) -> int:
        with self._lock:
            return self._fallback_count

    @property
    def registry(self) -> TaxonomyRegistry:
        return self._registry

    @property
    def escalation_threshold(self) -> float:
        return self._config.thresholds.escalation

    def should_escalate(self, pass1: CategorizationResult) -> bool:
        if not pass1.has_category or pass1.confidence is None:
            return True
        return pass1.confidence < self.escalation_threshold

    def _ask_model(
        self, tx: Transaction, pass1: CategorizationResult
    ) -> tuple[CategorizationResult | None, bool]:
        """Return the Pass-2 result and whether it may compete with Pass-1."""

        if self._model_client is None:
            return None, False
        outcome = self._model_client.classify(tx, pass1=pass1, industry=self._industry)
        match outcome:
            case Ok(value=result):
                return result, True
            case Fallback(value=degraded, reason=err):
                _logger.warning(
                    "dispatch:pass2_degraded tx_id=%s reason=%s error=%s",
                    tx.id,
                    err.__class__.__name__,
                    err,
                )
                return degraded, False
            case Fatal(error=err):
                _logger.error("dispatch:pass2_fatal tx_id=%s error=%s", tx.id, err)
        return None, False

    def _fallback_result(self) -> CategorizationResult:
        misc = self._registry.fallback
        return CategorizationResult(
            category_id=misc.id,
            category_slug=misc.slug,
            confidence=self._config.thresholds.fallback_confidence,
            rationale=FALLBACK_RATIONALE,
            engine="llm",
        )

    def categorize(self, tx: Transaction) -> Ok[Dispatch] | Fallback[Dispatch]:
        pass1 = self._classifier(tx)
        pass2: CategorizationResult | None = None

        if not self.should_escalate(pass1):
            state = DispatchState.PASS1_DECIDED
            chosen: CategorizationResult | None = pass1
        else:
            state = DispatchState.PASS2_ESCALATED
            emit(
                self._telemetry,
                "categorization_escalated",
                tx_id=tx.id,
                org_id=tx.org_id,
                pass1_confidence=pass1.confidence,
            )
            pass2, usable = self._ask_model(tx, pass1)
            if usable and pass2 is not None and pass2.has_category and (
                not pass1.has_category
                or pass1.confidence is None
                or (pass2.confidence or 0.0) > pass1.confidence
            ):
                chosen = pass2
            elif pass1.has_category:
                chosen = pass1
            else:
                chosen = None

        fallback_used = chosen is None
        if chosen is None:
            chosen = self._fallback_result()
            with self._lock:
                self._fallback_count += 1
            _logger.warning("dispatch:fallback tx_id=%s org_id=%s", tx.id, tx.org_id)
            emit(self._telemetry, "categorization_fallback", tx_id=tx.id, org_id=tx.org_id)

        outcome = guardrails.check(
            chosen.category_slug or self._registry.fallback.slug,
            chosen.confidence,
            mcc=tx.mcc,
            amount_cents=tx.amount_cents,
            config=self._config.guardrails,
            registry=self._registry,
        )
        dispatch = Dispatch(
            tx_id=tx.id,
            state=state,
            result=chosen,
            pass1=pass1,
            pass2=pass2,
            guardrail=outcome,
            fallback_used=fallback_used,
        )
        _logger.debug(
            "dispatch:decided tx_id=%s state=%s engine=%s category=%s confidence=%s",
            tx.id,
            state.value,
            chosen.engine,
            chosen.category_slug,
            chosen.confidence,
        )
        if fallback_used:
            return Fallback(dispatch, FallbackExhausted(tx.id))
        return Ok(dispatch)


__all__ = [
    "Dispatch",
    "DispatchState",
    "FALLBACK_RATIONALE",
    "HybridDispatcher",
    "Pass1Classifier",
]
