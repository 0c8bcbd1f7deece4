"""Two-level category taxonomy and attribute registry.

The registry is built once from a seed (a JSON list of tier-1 parents, each
with its tier-2 ``children``) and is read-only afterwards. Construction
validates the structural invariants and raises
:class:`~hybrid_categorizer.errors.ValidationError` listing every problem:

- slugs and ids are globally unique;
- every tier-2 category resolves to exactly one tier-1 parent;
- the ``miscellaneous`` fallback category exists.

Lookups never raise. ``resolve_by_slug`` falls back to ``miscellaneous`` for
unknown slugs; ``get`` is the strict variant and returns ``None``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from .config import FALLBACK_CATEGORY_SLUG
from .errors import ValidationError
from .logging_setup import get_logger

_logger = get_logger("hybrid_categorizer.taxonomy")

DEFAULT_SEED_PATH: Path = Path(__file__).with_name("seeds") / "universal_taxonomy.v1.json"

CATEGORY_TYPES: frozenset[str] = frozenset(
    {"revenue", "cogs", "opex", "liability", "clearing", "asset", "equity"}
)
ATTRIBUTE_TYPES: frozenset[str] = frozenset({"string", "number", "boolean", "enum"})
ALL_INDUSTRIES: str = "all"


@dataclass(frozen=True, slots=True)
class AttributeSpec:
    type: str
    values: tuple[str, ...] = ()
    required: bool = False
    description: str | None = None


@dataclass(frozen=True, slots=True)
class Category:
    """A single taxonomy node (tier 1 umbrella or tier 2 leaf)."""

    id: str
    slug: str
    name: str
    parent_id: str | None
    type: str
    tier: int
    is_pnl: bool = True
    industries: frozenset[str] = frozenset({ALL_INDUSTRIES})
    attribute_schema: Mapping[str, AttributeSpec] = field(default_factory=dict)
    display_order: int = 0
    is_active: bool = True

    def applies_to(self, industry: str | None) -> bool:
        if ALL_INDUSTRIES in self.industries:
            return True
        return industry is not None and industry in self.industries


# ---- Seed parsing ------------------------------------------------------------


def _parse_attribute_schema(
    raw: Any, *, slug: str, problems: list[str]
) -> dict[str, AttributeSpec]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        problems.append(f"{slug}: attribute_schema must be an object")
        return {}
    out: dict[str, AttributeSpec] = {}
    for name, spec in raw.items():
        if not isinstance(spec, Mapping):
            problems.append(f"{slug}.{name}: attribute spec must be an object")
            continue
        typ = str(spec.get("type") or "")
        if typ not in ATTRIBUTE_TYPES:
            problems.append(f"{slug}.{name}: unsupported attribute type {typ!r}")
            continue
        values = tuple(str(v) for v in (spec.get("values") or ()))
        if typ == "enum" and not values:
            problems.append(f"{slug}.{name}: enum attribute requires values")
            continue
        out[str(name)] = AttributeSpec(
            type=typ,
            values=values,
            required=bool(spec.get("required", False)),
            description=spec.get("description"),
        )
    return out


def _industries(raw: Any) -> frozenset[str]:
    if not raw:
        return frozenset({ALL_INDUSTRIES})
    return frozenset(str(x).strip().lower() for x in raw if str(x).strip())


def categories_from_seed(data: Sequence[Mapping[str, Any]]) -> list[Category]:
    """Flatten a nested seed into ``Category`` objects (parents before children).

    Tier-2 entries inherit ``type`` and ``is_pnl`` from their parent unless
    they override them. Raises ``ValidationError`` on malformed entries.
    """

    if not isinstance(data, Sequence) or isinstance(data, (str, bytes)):
        raise ValidationError("taxonomy seed must be a list of parent categories")

    problems: list[str] = []
    out: list[Category] = []
    for parent_index, parent in enumerate(data):
        if not isinstance(parent, Mapping):
            problems.append(f"entry {parent_index}: parent must be an object")
            continue
        pslug = str(parent.get("slug") or "").strip()
        pid = str(parent.get("id") or "").strip()
        ptype = str(parent.get("type") or "").strip()
        if not pslug or not pid:
            problems.append(f"entry {parent_index}: id and slug are required")
            continue
        if ptype not in CATEGORY_TYPES:
            problems.append(f"{pslug}: unknown category type {ptype!r}")
            continue
        p_is_pnl = bool(parent.get("is_pnl", True))
        out.append(
            Category(
                id=pid,
                slug=pslug,
                name=str(parent.get("name") or pslug),
                parent_id=None,
                type=ptype,
                tier=1,
                is_pnl=p_is_pnl,
                industries=_industries(parent.get("industries")),
                attribute_schema=_parse_attribute_schema(
                    parent.get("attribute_schema"), slug=pslug, problems=problems
                ),
                display_order=parent_index * 100,
                is_active=bool(parent.get("is_active", True)),
            )
        )
        for child_index, child in enumerate(parent.get("children") or []):
            if not isinstance(child, Mapping):
                problems.append(f"{pslug}[{child_index}]: child must be an object")
                continue
            cslug = str(child.get("slug") or "").strip()
            cid = str(child.get("id") or "").strip()
            if not cslug or not cid:
                problems.append(f"{pslug}[{child_index}]: id and slug are required")
                continue
            ctype = str(child.get("type") or ptype)
            if ctype not in CATEGORY_TYPES:
                problems.append(f"{cslug}: unknown category type {ctype!r}")
                continue
            out.append(
                Category(
                    id=cid,
                    slug=cslug,
                    name=str(child.get("name") or cslug),
                    parent_id=str(child.get("parent_id") or pid),
                    type=ctype,
                    tier=2,
                    is_pnl=bool(child.get("is_pnl", p_is_pnl)),
                    industries=_industries(child.get("industries")),
                    attribute_schema=_parse_attribute_schema(
                        child.get("attribute_schema"), slug=cslug, problems=problems
                    ),
                    display_order=parent_index * 100 + child_index + 1,
                    is_active=bool(child.get("is_active", True)),
                )
            )
    if problems:
        raise ValidationError("invalid taxonomy seed", problems=problems)
    return out


def load_seed(path: Path = DEFAULT_SEED_PATH) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValidationError("Seed JSON must be a list of parent categories")
    return data


# ---- Registry ----------------------------------------------------------------


class TaxonomyRegistry:
    """Read-only lookup structure over a validated set of categories."""

    def __init__(self, categories: Iterable[Category]) -> None:
        cats = list(categories)
        problems: list[str] = []

        by_id: dict[str, Category] = {}
        by_slug: dict[str, Category] = {}
        for c in cats:
            if c.id in by_id:
                problems.append(f"duplicate category id {c.id}")
            if c.slug in by_slug:
                problems.append(f"duplicate category slug {c.slug}")
            by_id[c.id] = c
            by_slug[c.slug] = c

        for c in cats:
            if c.tier == 1:
                if c.parent_id is not None:
                    problems.append(f"{c.slug}: tier-1 category cannot have a parent")
                continue
            parent = by_id.get(c.parent_id) if c.parent_id else None
            if parent is None:
                problems.append(f"{c.slug}: parent {c.parent_id!r} does not resolve")
            elif parent.tier != 1:
                problems.append(f"{c.slug}: parent {parent.slug} is not a tier-1 category")

        if FALLBACK_CATEGORY_SLUG not in by_slug:
            problems.append(f"fallback category {FALLBACK_CATEGORY_SLUG!r} is missing")

        if problems:
            raise ValidationError("invalid taxonomy", problems=problems)

        self._categories: tuple[Category, ...] = tuple(
            sorted(cats, key=lambda c: c.display_order)
        )
        self._by_id = by_id
        self._by_slug = by_slug
        self._children: dict[str, list[Category]] = {}
        for c in self._categories:
            if c.parent_id is not None:
                self._children.setdefault(c.parent_id, []).append(c)

    @classmethod
    def from_seed(cls, data: Sequence[Mapping[str, Any]]) -> TaxonomyRegistry:
        return cls(categories_from_seed(data))

    def __len__(self) -> int:
        return len(self._categories)

    def __iter__(self):
        return iter(self._categories)

    def __contains__(self, slug: object) -> bool:
        return slug in self._by_slug

    @property
    def fallback(self) -> Category:
        return self._by_slug[FALLBACK_CATEGORY_SLUG]

    def get(self, slug: str | None) -> Category | None:
        if not slug:
            return None
        return self._by_slug.get(slug)

    def resolve_by_id(self, category_id: str | None) -> Category | None:
        if not category_id:
            return None
        return self._by_id.get(category_id)

    def resolve_by_slug(self, slug: str | None) -> Category:
        """Return the category for ``slug``; unknown slugs map to the fallback."""

        found = self.get(slug.strip().lower() if slug else None)
        return found if found is not None else self.fallback

    def parent_of(self, category: Category) -> Category | None:
        return self.resolve_by_id(category.parent_id)

    def children_of(self, category: Category) -> list[Category]:
        return list(self._children.get(category.id, ()))

    def list_by_industry(self, industry: str | None, *, tier: int | None = None) -> list[Category]:
        """Active categories visible to ``industry`` (or ``all``), in display order."""

        vertical = industry.strip().lower() if industry else None
        return [
            c
            for c in self._categories
            if c.is_active and c.applies_to(vertical) and (tier is None or c.tier == tier)
        ]

    def validate_attributes(self, category: Category, attrs: Mapping[str, Any]) -> list[str]:
        """Return human-readable problems with ``attrs`` for ``category``.

        Checks unknown keys, missing required keys, enum membership and the
        primitive type of each value. An empty list means the bag is valid.
        """

        schema = category.attribute_schema
        problems: list[str] = []
        for key, value in attrs.items():
            spec = schema.get(key)
            if spec is None:
                problems.append(f"unknown attribute {key!r} for {category.slug}")
                continue
            if spec.type == "enum":
                if not isinstance(value, str) or value not in spec.values:
                    problems.append(
                        f"attribute {key!r} must be one of {list(spec.values)}, got {value!r}"
                    )
            elif spec.type == "string":
                if not isinstance(value, str):
                    problems.append(f"attribute {key!r} must be a string")
            elif spec.type == "number":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    problems.append(f"attribute {key!r} must be a number")
            elif spec.type == "boolean":
                if not isinstance(value, bool):
                    problems.append(f"attribute {key!r} must be a boolean")
        for key, spec in schema.items():
            if spec.required and key not in attrs:
                problems.append(f"missing required attribute {key!r} for {category.slug}")
        return problems


@lru_cache(maxsize=1)
def default_registry() -> TaxonomyRegistry:
    """Return the process-wide registry built from the bundled seed."""

    registry = TaxonomyRegistry.from_seed(load_seed(DEFAULT_SEED_PATH))
    _logger.debug("taxonomy:loaded categories=%d", len(registry))
    return registry


__all__ = [
    "ALL_INDUSTRIES",
    "AttributeSpec",
    "Category",
    "DEFAULT_SEED_PATH",
    "TaxonomyRegistry",
    "categories_from_seed",
    "default_registry",
    "load_seed",
]
