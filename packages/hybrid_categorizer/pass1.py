"""Pass-1: deterministic signal classifier.

:func:`classify` is a pure function of the transaction and the static tables
in :mod:`hybrid_categorizer.rules`. It performs no I/O and never raises.

Scoring
-------
Every matching rule emits a :class:`~hybrid_categorizer.models.Signal` whose
confidence is ``base * STRENGTH_MODIFIERS[strength]`` capped at
``MAX_SIGNAL_CONFIDENCE``. The highest-confidence signal wins; ties break by
``SIGNAL_PRECEDENCE`` (MCC, vendor, keyword/pattern, amount) and then by
emission order.
"""

from __future__ import annotations

from collections.abc import Mapping

from .logging_setup import get_logger
from .models import CategorizationResult, Signal, SignalStrength, SignalType, Transaction
from .rules import (
    AMOUNT_HEURISTICS,
    DESCRIPTION_PATTERNS,
    MCC_RULES,
    VENDOR_PATTERNS,
    best_keyword_match,
    normalize_vendor_name,
    vendor_matches,
)
from .taxonomy import TaxonomyRegistry, default_registry

_logger = get_logger("hybrid_categorizer.pass1")

STRENGTH_MODIFIERS: Mapping[SignalStrength, float] = {
    "exact": 1.0,
    "family": 0.95,
    "unknown": 0.8,
}
MAX_SIGNAL_CONFIDENCE: float = 0.98

SIGNAL_PRECEDENCE: Mapping[SignalType, int] = {
    "mcc": 0,
    "vendor": 1,
    "keyword": 2,
    "pattern": 2,
    "amount": 3,
}

NO_SIGNALS_RATIONALE: str = "No categorization signals found"
_MAX_SUPPORTING: int = 2


def signal_confidence(base: float, strength: SignalStrength) -> float:
    value = min(MAX_SIGNAL_CONFIDENCE, base * STRENGTH_MODIFIERS[strength])
    return round(max(0.0, value), 4)


def _signal(
    type_: SignalType, slug: str, evidence: str, base: float, strength: SignalStrength
) -> Signal:
    return Signal(
        type=type_,
        category_slug=slug,
        evidence=evidence,
        confidence=signal_confidence(base, strength),
        strength=strength,
    )


# ---- Signal extraction -------------------------------------------------------------


def extract_signals(tx: Transaction) -> list[Signal]:
    """Return signals in emission order: MCC, vendor, keyword, patterns, amount."""

    signals: list[Signal] = []

    if tx.mcc:
        rule = MCC_RULES.get(tx.mcc)
        if rule is not None:
            signals.append(
                _signal(
                    "mcc",
                    rule.category_slug,
                    f"MCC {tx.mcc} ({rule.label}) maps to {rule.category_slug} ({rule.strength})",
                    rule.base_confidence,
                    rule.strength,
                )
            )

    if tx.merchant_name:
        name = normalize_vendor_name(tx.merchant_name)
        best = None
        for pattern in VENDOR_PATTERNS:
            if vendor_matches(pattern, name) and (
                best is None or pattern.confidence > best.confidence
            ):
                best = pattern
        if best is not None:
            strength: SignalStrength = "exact" if best.match_type == "exact" else "family"
            signals.append(
                _signal(
                    "vendor",
                    best.category_slug,
                    f"merchant '{tx.merchant_name}' matched vendor pattern "
                    f"'{best.pattern}' ({best.match_type})",
                    best.confidence,
                    strength,
                )
            )

    if tx.description:
        kw = best_keyword_match(tx.description)
        if kw is not None:
            evidence = f"keywords [{', '.join(kw.matched)}] suggest {kw.rule.category_slug}"
            if kw.penalized:
                evidence += f"; generic terms [{', '.join(kw.penalized)}]"
            signals.append(
                _signal("keyword", kw.rule.category_slug, evidence, kw.confidence, "family")
            )

        for pat in DESCRIPTION_PATTERNS:
            if pat.regex.search(tx.description):
                signals.append(
                    _signal(
                        "pattern",
                        pat.category_slug,
                        f"description matches {pat.label} pattern",
                        pat.confidence,
                        "family",
                    )
                )

    for heuristic in AMOUNT_HEURISTICS:
        if heuristic.applies(tx.amount_cents):
            signals.append(
                _signal(
                    "amount",
                    heuristic.category_slug,
                    f"amount {tx.amount_cents} cents fits {heuristic.name} heuristic",
                    heuristic.confidence,
                    "unknown",
                )
            )

    return signals


def rank_signals(signals: list[Signal]) -> list[Signal]:
    """Sort by confidence (desc), then precedence, then emission order."""

    indexed = list(enumerate(signals))
    indexed.sort(key=lambda p: (-p[1].confidence, SIGNAL_PRECEDENCE[p[1].type], p[0]))
    return [s for _, s in indexed]


def _describe(sig: Signal) -> str:
    return f"{sig.type}: {sig.evidence} (confidence {sig.confidence:.2f})"


def _empty(rationale: str, signals: tuple[Signal, ...] = ()) -> CategorizationResult:
    return CategorizationResult(
        category_id=None,
        category_slug=None,
        confidence=None,
        rationale=(rationale,),
        engine="pass1",
        signals=signals,
    )


# ---- Public API ----------------------------------------------------------------


def classify(tx: Transaction, *, registry: TaxonomyRegistry | None = None) -> CategorizationResult:
    """Categorize ``tx`` from static rules alone.

    Parameters
    ----------
    tx:
        The transaction to classify.
    registry:
        Taxonomy used to resolve slugs to category ids (defaults to the
        bundled universal taxonomy). Signals whose slug is not in the
        registry are ignored.

    Returns
    -------
    CategorizationResult
        The winning category with the winner's rationale first followed by up
        to two supporting signals, or an empty result (no category,
        ``confidence=None``) when nothing matched.
    """

    try:
        reg = registry or default_registry()
        signals = [s for s in extract_signals(tx) if s.category_slug in reg]
        if not signals:
            return _empty(NO_SIGNALS_RATIONALE)

        ranked = rank_signals(signals)
        winner = ranked[0]
        category = reg.resolve_by_slug(winner.category_slug)
        rationale = [_describe(winner)]
        rationale.extend(f"supporting {_describe(s)}" for s in ranked[1 : 1 + _MAX_SUPPORTING])

        _logger.debug(
            "pass1:decided tx_id=%s category=%s confidence=%.4f signals=%d",
            tx.id,
            category.slug,
            winner.confidence,
            len(signals),
        )
        return CategorizationResult(
            category_id=category.id,
            category_slug=category.slug,
            confidence=winner.confidence,
            rationale=tuple(rationale),
            engine="pass1",
            signals=tuple(signals),
        )
    except Exception as e:  # noqa: BLE001 - Pass-1 degrades to an empty result
        _logger.exception("pass1:error tx_id=%s error=%s", getattr(tx, "id", None), e)
        return _empty(f"Pass-1 categorization error: {e}")


__all__ = [
    "MAX_SIGNAL_CONFIDENCE",
    "NO_SIGNALS_RATIONALE",
    "SIGNAL_PRECEDENCE",
    "STRENGTH_MODIFIERS",
    "classify",
    "extract_signals",
    "rank_signals",
    "signal_confidence",
]
