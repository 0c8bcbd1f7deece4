"""Prompt construction for Pass-2 model categorization.

This module builds:
- A deterministic JSON serialization of the transaction fields shown to the
  model, with a fixed field order.
- The system instructions and the user content (industry vertical, the
  industry's taxonomy, optional Pass-1 context and the transaction).
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from .models import CategorizationResult, Transaction
from .taxonomy import Category

TX_FIELD_ORDER: tuple[str, ...] = (
    "description",
    "merchant_name",
    "amount_cents",
    "currency",
    "mcc",
    "date",
)

_USER_TEMPLATE = """\
Industry vertical: {{INDUSTRY}}
{{TAXONOMY_HIERARCHY}}
{{PASS1_CONTEXT}}
Transaction:
BEGIN_TRANSACTION_JSON
{{TX_JSON}}
END_TRANSACTION_JSON

Respond with a single JSON object and nothing else:
{"category_slug": "<slug from the taxonomy>", "confidence": <0..1>, \
"rationale": "<one sentence>", "attributes": {<optional attributes from the category schema>}}
"""


def serialize_transaction_to_json(tx: Transaction) -> str:
    """Serialize the model-visible transaction fields with a fixed key order.

    Amounts stay in signed minor units; negative values are outflows.
    """

    data = tx.model_dump(mode="json")
    out: dict[str, Any] = {key: data.get(key) for key in TX_FIELD_ORDER}
    return json.dumps(out, ensure_ascii=False)


def build_system_instructions() -> str:
    """Return concise system instructions for single-transaction classification."""

    return (
        "You are a bookkeeping assistant that categorizes one business bank or card "
        "transaction into the provided two-level accounting taxonomy. Choose exactly one "
        "leaf category slug from the list. Never invent slugs; use 'miscellaneous' when "
        "nothing fits. Negative amounts are money leaving the business. Only fill "
        "attributes listed for the chosen category. Output JSON only."
    )


def _format_taxonomy(categories: Sequence[Category]) -> str:
    parents = [c for c in categories if c.tier == 1]
    children: dict[str, list[Category]] = {}
    for c in categories:
        if c.parent_id is not None:
            children.setdefault(c.parent_id, []).append(c)

    lines: list[str] = [
        "\nTaxonomy (slug: name):",
        "- Answer with a leaf slug (the indented entries).",
    ]
    for p in parents:
        lines.append(f"  • {p.name} ({p.type})")
        for c in children.get(p.id, []):
            line = f"    - {c.slug}: {c.name}"
            if c.attribute_schema:
                attrs = []
                for name, spec in c.attribute_schema.items():
                    if spec.type == "enum":
                        attrs.append(f"{name}=[{'|'.join(spec.values)}]")
                    else:
                        attrs.append(f"{name}:{spec.type}")
                line += f" | attributes: {', '.join(attrs)}"
            lines.append(line)
    return "\n".join(lines) + "\n"


def _format_pass1(pass1: CategorizationResult | None) -> str:
    if pass1 is None or not pass1.has_category:
        return ""
    confidence = "n/a" if pass1.confidence is None else f"{pass1.confidence:.2f}"
    lines = [
        "Rule-based hint (may be wrong):",
        f"  category: {pass1.category_slug} (confidence {confidence})",
    ]
    lines.extend(f"  - {r}" for r in pass1.rationale[:3])
    return "\n".join(lines) + "\n"


def build_user_content(
    tx: Transaction,
    *,
    industry: str,
    categories: Sequence[Category],
    pass1: CategorizationResult | None = None,
) -> str:
    """Build the user message for one transaction.

    ``categories`` should already be filtered to the industry (see
    :meth:`TaxonomyRegistry.list_by_industry`); tier-1 entries are used as
    headings and tier-2 entries as selectable slugs.
    """

    return (
        _USER_TEMPLATE.replace("{{INDUSTRY}}", industry)
        .replace("{{TAXONOMY_HIERARCHY}}", _format_taxonomy(categories))
        .replace("{{PASS1_CONTEXT}}", _format_pass1(pass1))
        .replace("{{TX_JSON}}", serialize_transaction_to_json(tx))
    )


__all__ = [
    "TX_FIELD_ORDER",
    "build_system_instructions",
    "build_user_content",
    "serialize_transaction_to_json",
]
