from __future__ import annotations

import pytest

from hybrid_categorizer.errors import ValidationError
from hybrid_categorizer.taxonomy import (
    TaxonomyRegistry,
    categories_from_seed,
    default_registry,
)


def _seed(*children: dict, parent_slug: str = "operating_expenses") -> list[dict]:
    return [
        {
            "id": "p1",
            "slug": parent_slug,
            "name": "Operating Expenses",
            "type": "opex",
            "children": [
                {"id": "c-misc", "slug": "miscellaneous", "name": "Miscellaneous"},
                *children,
            ],
        }
    ]


def test_bundled_seed_has_fallback_and_two_tiers() -> None:
    reg = default_registry()

    misc = reg.fallback
    assert misc.slug == "miscellaneous"
    assert misc.tier == 2
    parent = reg.parent_of(misc)
    assert parent is not None and parent.tier == 1 and parent.slug == "operating_expenses"

    for c in reg:
        if c.tier == 2:
            assert reg.parent_of(c) is not None, c.slug
        else:
            assert c.parent_id is None


def test_bundled_seed_includes_later_opex_additions() -> None:
    reg = default_registry()
    for slug in (
        "telecommunications",
        "repairs_maintenance",
        "vehicle_transportation",
        "legal_compliance",
    ):
        assert slug in reg


def test_children_inherit_type_and_pnl_flag() -> None:
    reg = default_registry()
    payouts = reg.get("payouts_clearing")
    assert payouts is not None
    assert payouts.type == "clearing"
    assert payouts.is_pnl is False


def test_resolve_by_slug_falls_back_to_miscellaneous() -> None:
    reg = default_registry()
    assert reg.resolve_by_slug("does_not_exist").slug == "miscellaneous"
    assert reg.resolve_by_slug(None).slug == "miscellaneous"
    assert reg.resolve_by_slug(" Travel_Meals ").slug == "travel_meals"
    assert reg.get("does_not_exist") is None


def test_list_by_industry_filters_vertical_specific_leaves() -> None:
    reg = default_registry()
    ecommerce = {c.slug for c in reg.list_by_industry("ecommerce", tier=2)}
    saas = {c.slug for c in reg.list_by_industry("saas", tier=2)}

    assert "shipping_income" in ecommerce
    assert "hosting_infrastructure" not in ecommerce
    assert "hosting_infrastructure" in saas
    assert "platform_fees" not in saas
    # Universal leaves appear everywhere
    assert "miscellaneous" in ecommerce and "miscellaneous" in saas


def test_missing_fallback_is_rejected() -> None:
    seed = [{"id": "p1", "slug": "opex", "type": "opex", "children": []}]
    with pytest.raises(ValidationError) as exc:
        TaxonomyRegistry.from_seed(seed)
    assert any("miscellaneous" in p for p in exc.value.problems)


def test_duplicate_slug_is_rejected() -> None:
    seed = _seed({"id": "c2", "slug": "miscellaneous", "name": "Again"})
    with pytest.raises(ValidationError) as exc:
        TaxonomyRegistry.from_seed(seed)
    assert any("duplicate category slug" in p for p in exc.value.problems)


def test_unresolvable_parent_is_rejected() -> None:
    seed = _seed({"id": "c2", "slug": "orphan", "name": "Orphan", "parent_id": "nope"})
    with pytest.raises(ValidationError) as exc:
        TaxonomyRegistry.from_seed(seed)
    assert any("orphan" in p and "does not resolve" in p for p in exc.value.problems)


def test_bad_attribute_schema_lists_every_problem() -> None:
    seed = _seed(
        {"id": "c2", "slug": "a", "attribute_schema": {"x": {"type": "color"}}},
        {"id": "c3", "slug": "b", "attribute_schema": {"y": {"type": "enum"}}},
    )
    with pytest.raises(ValidationError) as exc:
        categories_from_seed(seed)
    problems = exc.value.problems
    assert any("unsupported attribute type" in p for p in problems)
    assert any("enum attribute requires values" in p for p in problems)


def test_validate_attributes_reports_type_enum_and_unknown_keys() -> None:
    reg = default_registry()
    software = reg.get("software_subscriptions")
    assert software is not None

    assert reg.validate_attributes(software, {"subscription_type": "monthly"}) == []

    problems = reg.validate_attributes(
        software, {"subscription_type": "weekly", "vendor": 3, "color": "red"}
    )
    assert len(problems) == 3
    assert any("must be one of" in p for p in problems)
    assert any("must be a string" in p for p in problems)
    assert any("unknown attribute 'color'" in p for p in problems)


def test_validate_attributes_reports_missing_required() -> None:
    seed = _seed(
        {
            "id": "c2",
            "slug": "with_required",
            "attribute_schema": {"ref": {"type": "string", "required": True}},
        }
    )
    reg = TaxonomyRegistry.from_seed(seed)
    cat = reg.get("with_required")
    assert cat is not None
    assert reg.validate_attributes(cat, {}) == [
        "missing required attribute 'ref' for with_required"
    ]
