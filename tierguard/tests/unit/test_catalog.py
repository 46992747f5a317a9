from __future__ import annotations

import json

import pytest

from tierguard.core.config import Settings
from tierguard.core.errors import CatalogError
from tierguard.services.catalog import (
    FEATURE_AI_GENERATE,
    FEATURE_API_ACCESS,
    FEATURE_BULK_OPERATIONS,
    FEATURE_CUSTOMERS_INVITE,
    FEATURE_EXPORT_CSV,
    FEATURE_EXPORT_EXCEL,
    FEATURE_EXPORT_PDF,
    FEATURE_RECIPE_BROWSE,
    QUOTA_AI_GENERATIONS,
    QUOTA_CUSTOMERS,
    QUOTA_MEAL_PLANS,
    QUOTA_RECIPES,
    get_tier_definitions,
    load_tier_catalog,
)


def test_default_catalog_is_ordered_by_rank() -> None:
    tiers = get_tier_definitions(Settings())

    assert [tier.tier_id for tier in tiers] == ["starter", "professional", "enterprise"]
    assert [tier.limit_for(QUOTA_CUSTOMERS) for tier in tiers] == [9, 20, None]
    assert [tier.limit_for(QUOTA_MEAL_PLANS) for tier in tiers] == [50, 200, None]
    assert [tier.limit_for(QUOTA_AI_GENERATIONS) for tier in tiers] == [100, 500, None]
    assert [tier.limit_for(QUOTA_RECIPES) for tier in tiers] == [1000, 2500, 4000]
    # Unlisted quotas are closed, listed None is unlimited.
    assert tiers[0].limit_for("storage_gb") == 0


def test_default_catalog_gates_exports_and_bulk_operations() -> None:
    starter, professional, enterprise = get_tier_definitions(Settings())

    assert FEATURE_EXPORT_PDF in starter.features
    assert FEATURE_EXPORT_CSV not in starter.features
    assert FEATURE_BULK_OPERATIONS not in starter.features
    assert {FEATURE_EXPORT_CSV, FEATURE_BULK_OPERATIONS} <= professional.features
    assert FEATURE_EXPORT_EXCEL not in professional.features
    assert FEATURE_API_ACCESS not in professional.features
    assert {FEATURE_EXPORT_EXCEL, FEATURE_API_ACCESS} <= enterprise.features


def test_upgrade_hint_points_at_lowest_tier_that_allows_capability() -> None:
    catalog = load_tier_catalog(Settings())

    assert catalog.upgrade_for(FEATURE_EXPORT_CSV, "starter") == "professional"
    assert catalog.upgrade_for(FEATURE_EXPORT_EXCEL, "starter") == "enterprise"
    assert catalog.upgrade_for(FEATURE_API_ACCESS, "enterprise") is None
    # Quota-bound hints skip tiers that do not raise the ceiling.
    assert catalog.upgrade_for(FEATURE_CUSTOMERS_INVITE, "professional") == "enterprise"
    assert catalog.upgrade_for(FEATURE_AI_GENERATE, "starter") == "professional"
    assert catalog.upgrade_for(FEATURE_BULK_OPERATIONS, None) == "professional"


def test_quota_capabilities_map_to_counters() -> None:
    catalog = load_tier_catalog(Settings())

    assert catalog.quota_for(FEATURE_CUSTOMERS_INVITE) == QUOTA_CUSTOMERS
    assert catalog.quota_for(FEATURE_RECIPE_BROWSE) is None
    assert catalog.quota_names("starter") == ["ai_generations", "customers", "meal_plans", "recipes"]


def test_catalog_from_inline_json_accepts_unlimited() -> None:
    raw = {
        "tiers": [
            {"tier_id": "solo", "rank": 1, "features": ["customers.invite"], "limits": {"customers": "unlimited"}},
        ],
        "quota_capabilities": {"customers.invite": "customers"},
    }

    catalog = load_tier_catalog(Settings(tier_catalog_json=json.dumps(raw)))

    solo = catalog.get("solo")
    assert solo is not None
    assert solo.name == "Solo"
    assert solo.limit_for("customers") is None


def test_catalog_from_path(tmp_path) -> None:
    path = tmp_path / "tiers.json"
    path.write_text(
        json.dumps({"tiers": [{"tier_id": "basic", "rank": 1, "past_due_grace_hours": 24}]}),
        encoding="utf-8",
    )

    catalog = load_tier_catalog(Settings(tier_catalog_path=str(path)))

    assert catalog.get("basic").past_due_grace_hours == 24


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps({"tiers": []}),
        json.dumps({"tiers": [{"tier_id": "a", "rank": 1}, {"tier_id": "a", "rank": 2}]}),
        json.dumps({"tiers": [{"tier_id": "a"}]}),
    ],
)
def test_invalid_catalog_raises(raw) -> None:
    with pytest.raises(CatalogError):
        load_tier_catalog(Settings(tier_catalog_json=raw))


def test_missing_catalog_file_raises(tmp_path) -> None:
    with pytest.raises(CatalogError):
        load_tier_catalog(Settings(tier_catalog_path=str(tmp_path / "missing.json")))
