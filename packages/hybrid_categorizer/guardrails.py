"""Post-hoc guardrails applied to whichever category a pass proposed.

Guardrails are advisory: they never change the category or its confidence
and never raise. Each finding is a
:class:`~hybrid_categorizer.errors.GuardrailViolation` value carried on the
:class:`GuardrailOutcome`; any finding forces human review downstream.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .config import GuardrailConfig
from .errors import GuardrailViolation
from .logging_setup import get_logger
from .rules import MCC_RULES
from .taxonomy import Category, TaxonomyRegistry, default_registry

_logger = get_logger("hybrid_categorizer.guardrails")

# Categories that may stand in for one another when an MCC points at a
# sibling in the same family.
COMPATIBLE_FAMILIES: tuple[frozenset[str], ...] = (
    frozenset(
        {
            "software_subscriptions",
            "hosting_infrastructure",
            "telecommunications",
            "office_supplies",
            "rent_utilities",
        }
    ),
    frozenset({"materials_supplies", "packaging", "office_supplies"}),
    frozenset({"marketing_ads", "professional_services", "legal_compliance"}),
    frozenset({"vehicle_transportation", "travel_meals"}),
    frozenset({"bank_fees", "payment_processing_fees"}),
)

# slug -> absolute amount (cents) at or above which the amount is implausible.
UNREALISTIC_AMOUNT_CENTS: Mapping[str, int] = {
    "travel_meals": 50_000,
    "bank_fees": 10_000,
}


@dataclass(frozen=True, slots=True)
class GuardrailOutcome:
    category_id: str
    category_slug: str
    confidence: float | None
    violations: tuple[GuardrailViolation, ...] = ()

    @property
    def force_review(self) -> bool:
        return bool(self.violations)

    @property
    def violation_kinds(self) -> tuple[str, ...]:
        return tuple(v.kind for v in self.violations)


def compatible(a: str, b: str) -> bool:
    return a == b or any(a in fam and b in fam for fam in COMPATIBLE_FAMILIES)


def _check_mcc(slug: str, mcc: str | None) -> GuardrailViolation | None:
    if not mcc:
        return None
    rule = MCC_RULES.get(mcc)
    if rule is None or rule.strength != "exact":
        return None
    if compatible(rule.category_slug, slug):
        return None
    return GuardrailViolation(
        "mcc_incompatible",
        f"MCC {mcc} maps to {rule.category_slug}, incompatible with {slug}",
    )


def _check_confidence(confidence: float | None, floor: float) -> GuardrailViolation | None:
    if confidence is not None and confidence >= floor:
        return None
    shown = "none" if confidence is None else f"{confidence:.2f}"
    return GuardrailViolation("confidence_too_low", f"confidence {shown} below {floor:.2f}")


def _check_sign(category: Category, amount_cents: int | None) -> GuardrailViolation | None:
    if amount_cents is None or category.type != "revenue" or amount_cents >= 0:
        return None
    return GuardrailViolation(
        "amount_sign_mismatch",
        f"{category.slug} is revenue but amount is negative ({amount_cents} cents)",
    )


def _check_amount(slug: str, amount_cents: int | None) -> GuardrailViolation | None:
    limit = UNREALISTIC_AMOUNT_CENTS.get(slug)
    if limit is None or amount_cents is None or abs(amount_cents) < limit:
        return None
    return GuardrailViolation(
        "amount_unrealistic",
        f"{slug} of {abs(amount_cents)} cents is at or above {limit} cents",
    )


def check(
    category_slug: str,
    confidence: float | None,
    *,
    mcc: str | None,
    amount_cents: int | None,
    config: GuardrailConfig | None = None,
    registry: TaxonomyRegistry | None = None,
) -> GuardrailOutcome:
    """Run every enabled guardrail against a proposed category.

    Unknown slugs are resolved to the fallback category first, so the
    outcome always carries a usable category.
    """

    cfg = config or GuardrailConfig()
    reg = registry or default_registry()
    category = reg.resolve_by_slug(category_slug)
    slug = category.slug

    violations: list[GuardrailViolation] = []
    try:
        found = [
            _check_mcc(slug, mcc) if cfg.enforce_mcc_compatibility else None,
            _check_confidence(confidence, cfg.min_confidence),
            _check_sign(category, amount_cents) if cfg.enable_amount_checks else None,
            _check_amount(slug, amount_cents) if cfg.enable_amount_checks else None,
        ]
        violations = [v for v in found if v is not None]
    except Exception as e:  # noqa: BLE001 - guardrails must not break categorization
        _logger.exception("guardrails:error category=%s error=%s", slug, e)
        violations = [GuardrailViolation("guardrail_error", str(e))]

    if violations:
        _logger.info(
            "guardrails:flagged category=%s confidence=%s violations=%s",
            slug,
            confidence,
            ",".join(v.kind for v in violations),
        )
    return GuardrailOutcome(
        category_id=category.id,
        category_slug=slug,
        confidence=confidence,
        violations=tuple(violations),
    )


__all__ = [
    "COMPATIBLE_FAMILIES",
    "GuardrailOutcome",
    "UNREALISTIC_AMOUNT_CENTS",
    "check",
    "compatible",
]
