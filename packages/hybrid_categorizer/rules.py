"""Static rule tables for the Pass-1 signal classifier.

All tables are keyed by universal taxonomy slugs (see
``seeds/universal_taxonomy.v1.json``). They are module-level constants and
never mutated at runtime.

Tables
------
- ``MCC_RULES``: merchant category code -> category with a strength and a
  base confidence.
- ``VENDOR_PATTERNS``: merchant-name patterns (exact/prefix/contains/regex).
- ``KEYWORD_RULES`` and ``KEYWORD_PENALTIES``: description keywords.
- ``DESCRIPTION_PATTERNS``: regular expressions over the description.
- ``AMOUNT_HEURISTICS``: weak hints from the signed amount alone.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Literal

from .models import SignalStrength

type VendorMatchType = Literal["exact", "prefix", "contains", "regex"]


@dataclass(frozen=True, slots=True)
class MccRule:
    category_slug: str
    label: str
    strength: SignalStrength
    base_confidence: float


@dataclass(frozen=True, slots=True)
class VendorPattern:
    pattern: str
    match_type: VendorMatchType
    category_slug: str
    confidence: float


@dataclass(frozen=True, slots=True)
class KeywordRule:
    keywords: tuple[str, ...]
    category_slug: str
    confidence: float
    weight: int
    domain: str
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class KeywordPenalty:
    keyword: str
    penalty: float
    reason: str


@dataclass(frozen=True, slots=True)
class DescriptionPattern:
    regex: re.Pattern[str]
    category_slug: str
    confidence: float
    label: str


@dataclass(frozen=True, slots=True)
class AmountHeuristic:
    name: str
    applies: Callable[[int], bool]
    category_slug: str
    confidence: float


# ---- MCC -----------------------------------------------------------------------

MCC_RULES: Mapping[str, MccRule] = {
    # Food & dining
    "5812": MccRule("travel_meals", "Eating places, restaurants", "family", 0.70),
    "5814": MccRule("travel_meals", "Fast food restaurants", "family", 0.75),
    # Fuel and transit
    "5541": MccRule("vehicle_transportation", "Service stations", "exact", 0.90),
    "5542": MccRule("vehicle_transportation", "Automated fuel dispensers", "exact", 0.90),
    "4111": MccRule("vehicle_transportation", "Commuter transport", "family", 0.75),
    "4121": MccRule("vehicle_transportation", "Taxicabs and limousines", "family", 0.75),
    # Telecom and software
    "4814": MccRule("software_subscriptions", "Telecommunication services", "exact", 0.90),
    "4815": MccRule("software_subscriptions", "Monthly summary telephone charges", "exact", 0.90),
    "7372": MccRule(
        "software_subscriptions", "Computer programming, data processing", "exact", 0.90
    ),
    "7379": MccRule("software_subscriptions", "Computer maintenance and repair", "exact", 0.85),
    # Utilities
    "4900": MccRule("rent_utilities", "Utilities", "exact", 0.90),
    # Banking
    "6010": MccRule("bank_fees", "Manual cash disbursements", "exact", 0.90),
    "6011": MccRule("bank_fees", "Automated cash disbursements", "exact", 0.90),
    # Insurance, government
    "6300": MccRule("insurance", "Insurance sales and underwriting", "exact", 0.90),
    "9399": MccRule("legal_compliance", "Government services", "exact", 0.85),
    # Professional
    "7311": MccRule("marketing_ads", "Advertising services", "exact", 0.85),
    "8931": MccRule("professional_services", "Accounting and bookkeeping", "family", 0.75),
    "8999": MccRule("professional_services", "Professional services", "family", 0.70),
    # Supplies and hardware
    "5200": MccRule("repairs_maintenance", "Home supply warehouse stores", "family", 0.75),
    "5211": MccRule("materials_supplies", "Lumber and building materials", "family", 0.80),
    "5943": MccRule("office_supplies", "Stationery and office supplies", "family", 0.75),
    "5912": MccRule("materials_supplies", "Drug stores and pharmacies", "family", 0.85),
    "5977": MccRule("materials_supplies", "Cosmetic stores", "family", 0.80),
    "5310": MccRule("materials_supplies", "Discount stores", "family", 0.75),
}


# ---- Vendors ---------------------------------------------------------------------

VENDOR_PATTERNS: tuple[VendorPattern, ...] = (
    # Software
    VendorPattern("adobe", "contains", "software_subscriptions", 0.92),
    VendorPattern("microsoft", "contains", "software_subscriptions", 0.92),
    VendorPattern("canva", "exact", "software_subscriptions", 0.95),
    VendorPattern("squarespace", "exact", "software_subscriptions", 0.95),
    VendorPattern("wix", "exact", "software_subscriptions", 0.95),
    VendorPattern("zoom", "exact", "software_subscriptions", 0.92),
    VendorPattern("slack", "exact", "software_subscriptions", 0.95),
    VendorPattern("asana", "exact", "software_subscriptions", 0.95),
    VendorPattern("klaviyo", "exact", "software_subscriptions", 0.95),
    VendorPattern("mailchimp", "exact", "software_subscriptions", 0.95),
    VendorPattern("attentive", "exact", "software_subscriptions", 0.92),
    VendorPattern("postscript", "exact", "software_subscriptions", 0.92),
    VendorPattern("quickbooks", "contains", "software_subscriptions", 0.95),
    # Advertising
    VendorPattern("facebook ads", "contains", "marketing_ads", 0.93),
    VendorPattern("meta for business", "contains", "marketing_ads", 0.93),
    VendorPattern("google ads", "contains", "marketing_ads", 0.93),
    VendorPattern("tiktok ads", "contains", "marketing_ads", 0.93),
    VendorPattern("pinterest ads", "contains", "marketing_ads", 0.92),
    # Carriers
    VendorPattern("usps", "contains", "freight_shipping", 0.93),
    VendorPattern("fedex", "contains", "freight_shipping", 0.93),
    VendorPattern("ups", "contains", "freight_shipping", 0.93),
    VendorPattern("dhl", "contains", "freight_shipping", 0.92),
    # Fulfillment
    VendorPattern("shipbob", "contains", "fulfillment_logistics", 0.95),
    VendorPattern("shipmonk", "contains", "fulfillment_logistics", 0.95),
    VendorPattern("deliverr", "contains", "fulfillment_logistics", 0.95),
    # Payroll, office, insurance
    VendorPattern("gusto", "exact", "labor", 0.95),
    VendorPattern("rippling", "exact", "labor", 0.95),
    VendorPattern("staples", "contains", "office_supplies", 0.85),
    VendorPattern("office depot", "contains", "office_supplies", 0.85),
    VendorPattern("state farm", "contains", "insurance", 0.93),
    VendorPattern("allstate", "contains", "insurance", 0.93),
    VendorPattern("geico", "contains", "insurance", 0.93),
    # Coffee and fuel
    VendorPattern("starbucks", "contains", "travel_meals", 0.75),
    VendorPattern("dunkin", "contains", "travel_meals", 0.75),
    VendorPattern("shell", "contains", "vehicle_transportation", 0.80),
    VendorPattern("chevron", "contains", "vehicle_transportation", 0.80),
    VendorPattern("exxon", "contains", "vehicle_transportation", 0.80),
    # Processors
    VendorPattern(
        r"^(stripe|paypal|square)\b.*\bfees?\b", "regex", "payment_processing_fees", 0.92
    ),
)

_CORPORATE_SUFFIXES: tuple[str, ...] = ("llc", "inc", "corp", "ltd", "co", "company")
_SUFFIX_RE = re.compile(r"\b(" + "|".join(_CORPORATE_SUFFIXES) + r")\b")
_MIN_VENDOR_NAME_LENGTH = 4


def normalize_vendor_name(vendor: str) -> str:
    """Lowercase, strip punctuation, collapse spaces and drop corporate suffixes.

    Suffixes are kept when removing them would leave a very short name
    (``"AT&T Corp"`` stays ``"at t corp"``).
    """

    normalized = " ".join(re.sub(r"[^\w\s]", " ", vendor.strip().lower()).split())
    without = " ".join(_SUFFIX_RE.sub("", normalized).split())
    if len(without) <= _MIN_VENDOR_NAME_LENGTH and len(normalized) > len(without):
        return normalized
    return without


def _contains_term(haystack: str, term: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(term) + r"(?!\w)", haystack) is not None


def vendor_matches(pattern: VendorPattern, normalized_name: str) -> bool:
    if pattern.match_type == "regex":
        return re.search(pattern.pattern, normalized_name, flags=re.IGNORECASE) is not None
    target = normalize_vendor_name(pattern.pattern)
    if pattern.match_type == "exact":
        return normalized_name == target
    if pattern.match_type == "prefix":
        return normalized_name == target or normalized_name.startswith(target + " ")
    return _contains_term(normalized_name, target)


# ---- Keywords --------------------------------------------------------------------

KEYWORD_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        ("processing fee", "transaction fee", "payment fee", "merchant fee", "card fee"),
        "payment_processing_fees", 0.90, 5, "payment_processing",
        exclude=("payout", "deposit", "transfer"),
    ),
    KeywordRule(
        ("chargeback", "dispute fee", "declined transaction"),
        "payment_processing_fees", 0.92, 5, "payment_disputes",
    ),
    KeywordRule(
        ("payout", "transfer", "deposit", "settlement", "disbursement"),
        "payouts_clearing", 0.88, 5, "payouts",
        exclude=("fee", "charge"),
    ),
    KeywordRule(
        ("refund", "return", "chargeback", "reversal", "void"),
        "refunds_contra", 0.92, 6, "refunds",
    ),
    KeywordRule(
        ("customer return", "order cancellation", "cancelled order"),
        "refunds_contra", 0.88, 5, "order_cancellations",
    ),
    KeywordRule(
        ("wholesale", "supplier invoice", "purchase order", "po#", "net 30", "net 60"),
        "materials_supplies", 0.90, 6, "supplier_purchases",
        exclude=("refund", "credit"),
    ),
    KeywordRule(
        ("inventory purchase", "product cost", "goods purchased", "merchandise"),
        "materials_supplies", 0.85, 5, "inventory",
    ),
    KeywordRule(
        ("alibaba", "aliexpress", "wholesale order", "bulk purchase"),
        "materials_supplies", 0.82, 4, "sourcing",
    ),
    KeywordRule(
        ("packaging", "boxes", "mailers", "poly bags", "bubble wrap", "packing tape"),
        "packaging", 0.92, 6, "packaging",
    ),
    KeywordRule(
        ("shipping supplies", "packing materials", "cartons", "labels"),
        "packaging", 0.88, 5, "packaging_supplies",
    ),
    KeywordRule(
        ("postage", "shipping label", "freight", "delivery charge", "carrier fee"),
        "freight_shipping", 0.90, 5, "shipping",
    ),
    KeywordRule(
        ("priority mail", "ground shipping", "express delivery", "overnight"),
        "freight_shipping", 0.88, 5, "shipping_services",
    ),
    KeywordRule(
        ("rma", "return authorization", "return label", "restocking fee", "return processing"),
        "fulfillment_logistics", 0.90, 5, "returns_processing",
        exclude=("refund",),
    ),
    KeywordRule(
        ("reverse logistics", "return shipping", "damaged goods"),
        "fulfillment_logistics", 0.85, 4, "reverse_logistics",
    ),
    KeywordRule(
        ("advertising", "ad spend", "campaign", "sponsored", "promotion"),
        "marketing_ads", 0.88, 5, "advertising",
    ),
    KeywordRule(
        ("facebook ads", "google ads", "tiktok ads", "instagram ads", "pinterest ads"),
        "marketing_ads", 0.93, 6, "paid_social",
    ),
    KeywordRule(
        ("influencer", "affiliate", "marketing agency", "creative services"),
        "marketing_ads", 0.85, 4, "partnerships",
    ),
    KeywordRule(
        ("subscription", "saas", "monthly plan", "annual plan", "license fee"),
        "software_subscriptions", 0.85, 4, "software",
    ),
    KeywordRule(
        ("app charge", "shopify app", "plugin", "extension", "integration"),
        "software_subscriptions", 0.88, 5, "apps",
    ),
    KeywordRule(
        ("domain", "hosting", "ssl certificate", "cdn", "cloud storage"),
        "software_subscriptions", 0.90, 5, "infrastructure",
    ),
    KeywordRule(
        ("email marketing", "sms platform", "analytics", "crm"),
        "software_subscriptions", 0.87, 4, "marketing_tools",
    ),
    KeywordRule(
        ("payroll", "wages", "salary", "contractor", "freelance"),
        "labor", 0.92, 6, "payroll",
    ),
    KeywordRule(
        ("employee benefits", "health insurance", "workers comp", "fica", "withholding"),
        "labor", 0.90, 5, "benefits",
    ),
    KeywordRule(
        ("3pl", "fulfillment center", "pick and pack", "warehouse", "storage fee"),
        "fulfillment_logistics", 0.92, 6, "fulfillment",
    ),
    KeywordRule(
        ("prep service", "kitting", "assembly", "inventory management"),
        "fulfillment_logistics", 0.88, 5, "prep",
    ),
    KeywordRule(
        ("rent", "lease", "office space", "co-working"),
        "rent_utilities", 0.90, 5, "rent",
        exclude=("car", "vehicle"),
    ),
    KeywordRule(
        ("electric", "electricity", "gas", "water", "utilities", "internet"),
        "rent_utilities", 0.88, 5, "utilities",
        exclude=("gasoline", "fuel"),
    ),
    KeywordRule(
        ("phone service", "wireless", "voip", "conference line"),
        "telecommunications", 0.86, 4, "telecom",
    ),
    KeywordRule(
        ("insurance", "liability", "coverage", "premium", "policy"),
        "insurance", 0.92, 5, "insurance",
        exclude=("health insurance",),
    ),
    KeywordRule(
        ("accountant", "bookkeeping", "consulting", "cpa"),
        "professional_services", 0.90, 5, "professional",
    ),
    KeywordRule(
        ("lawyer", "attorney", "legal fees", "trademark", "business license"),
        "legal_compliance", 0.90, 5, "legal",
    ),
    KeywordRule(
        ("office supplies", "paper", "pens", "furniture", "desk"),
        "office_supplies", 0.82, 3, "office",
    ),
    KeywordRule(
        ("bank fee", "monthly fee", "overdraft", "wire transfer"),
        "bank_fees", 0.85, 4, "banking",
        exclude=("payment processing", "merchant"),
    ),
    KeywordRule(
        ("repair", "maintenance", "hvac", "plumbing"),
        "repairs_maintenance", 0.85, 4, "repairs",
        exclude=("vehicle", "car"),
    ),
    KeywordRule(
        ("travel", "hotel", "airfare", "conference", "trade show"),
        "travel_meals", 0.85, 4, "travel",
    ),
    KeywordRule(
        ("gasoline", "fuel", "parking", "toll", "mileage"),
        "vehicle_transportation", 0.82, 3, "vehicle",
    ),
    KeywordRule(
        ("lunch", "dinner", "meal", "restaurant", "catering"),
        "travel_meals", 0.75, 3, "meals",
        exclude=("personal",),
    ),
    KeywordRule(
        ("sales tax", "state tax", "tax payment", "revenue department"),
        "sales_tax_payable", 0.95, 6, "tax_payments",
    ),
)

KEYWORD_PENALTIES: tuple[KeywordPenalty, ...] = (
    KeywordPenalty("com", 0.10, "Generic domain suffix"),
    KeywordPenalty("inc", 0.05, "Generic business suffix"),
    KeywordPenalty("llc", 0.05, "Generic business suffix"),
    KeywordPenalty("bill", 0.15, "Overly generic billing term"),
    KeywordPenalty("payment", 0.10, "Generic payment term"),
    KeywordPenalty("purchase", 0.10, "Generic purchase term"),
    KeywordPenalty("transaction", 0.15, "Generic transaction term"),
)

# Upper bound on a keyword rule's adjusted confidence.
KEYWORD_CONFIDENCE_CAP: float = 0.95
# Each extra matched keyword adds this much, up to the bonus cap.
KEYWORD_MATCH_BONUS: float = 0.05
KEYWORD_BONUS_CAP: float = 0.20


@dataclass(frozen=True, slots=True)
class KeywordMatch:
    rule: KeywordRule
    matched: tuple[str, ...]
    penalized: tuple[str, ...]

    @property
    def score(self) -> int:
        return self.rule.weight * len(self.matched)

    @property
    def confidence(self) -> float:
        bonus = min(KEYWORD_BONUS_CAP, len(self.matched) * KEYWORD_MATCH_BONUS)
        deduction = sum(p.penalty for p in KEYWORD_PENALTIES if p.keyword in self.penalized)
        return min(KEYWORD_CONFIDENCE_CAP, max(0.0, self.rule.confidence + bonus - deduction))


def match_keyword_rules(description: str) -> list[KeywordMatch]:
    """Return every keyword rule that matches ``description`` (table order)."""

    text = " ".join(description.lower().split())
    if not text:
        return []
    penalized = tuple(p.keyword for p in KEYWORD_PENALTIES if _contains_term(text, p.keyword))
    out: list[KeywordMatch] = []
    for rule in KEYWORD_RULES:
        if any(_contains_term(text, ex) for ex in rule.exclude):
            continue
        matched = tuple(k for k in rule.keywords if _contains_term(text, k))
        if matched:
            out.append(KeywordMatch(rule=rule, matched=matched, penalized=penalized))
    return out


def best_keyword_match(description: str) -> KeywordMatch | None:
    """Highest ``weight * matched`` rule; the earliest rule wins ties."""

    best: KeywordMatch | None = None
    for m in match_keyword_rules(description):
        if best is None or m.score > best.score:
            best = m
    return best


# ---- Description patterns ----------------------------------------------------------

DESCRIPTION_PATTERNS: tuple[DescriptionPattern, ...] = (
    DescriptionPattern(
        re.compile(
            r"\b(shopify|stripe|square|paypal|amazon)\b.*\b(payout|transfer|deposit)\b", re.I
        ),
        "payouts_clearing",
        0.90,
        "platform payout",
    ),
    DescriptionPattern(
        re.compile(r"\b(stripe|paypal|square|shopify payments)\b.*\bfees?\b", re.I),
        "payment_processing_fees",
        0.90,
        "processor fee",
    ),
    DescriptionPattern(
        re.compile(r"\bsales\s+tax\b", re.I),
        "sales_tax_payable",
        0.90,
        "sales tax remittance",
    ),
    DescriptionPattern(
        re.compile(r"\b(overdraft|nsf|atm|wire)\s+(fee|charge)\b", re.I),
        "bank_fees",
        0.90,
        "bank fee",
    ),
    DescriptionPattern(
        re.compile(r"\b(uber|lyft)\b(?!\s*eats)\s*(trip|ride)?", re.I),
        "vehicle_transportation",
        0.85,
        "rideshare",
    ),
)


# ---- Amount heuristics ---------------------------------------------------------

# Outflows under one dollar look like per-transaction processor fees.
TINY_OUTFLOW_CENTS: int = 100
# Inflows of a thousand dollars or more look like platform payouts.
LARGE_INFLOW_CENTS: int = 100_000

AMOUNT_HEURISTICS: tuple[AmountHeuristic, ...] = (
    AmountHeuristic(
        "tiny_outflow",
        lambda cents: cents < 0 and abs(cents) < TINY_OUTFLOW_CENTS,
        "payment_processing_fees",
        0.55,
    ),
    AmountHeuristic(
        "large_inflow",
        lambda cents: cents >= LARGE_INFLOW_CENTS,
        "payouts_clearing",
        0.50,
    ),
)


__all__ = [
    "AMOUNT_HEURISTICS",
    "AmountHeuristic",
    "DESCRIPTION_PATTERNS",
    "DescriptionPattern",
    "KEYWORD_PENALTIES",
    "KEYWORD_RULES",
    "KeywordMatch",
    "KeywordPenalty",
    "KeywordRule",
    "MCC_RULES",
    "MccRule",
    "VENDOR_PATTERNS",
    "VendorPattern",
    "best_keyword_match",
    "match_keyword_rules",
    "normalize_vendor_name",
    "vendor_matches",
]
