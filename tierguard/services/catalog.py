from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import json
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from tierguard.core.config import Settings, get_settings
from tierguard.core.errors import CatalogError


logger = logging.getLogger(__name__)

FEATURE_CUSTOMERS_INVITE = "customers.invite"
FEATURE_MEAL_PLAN_CREATE = "meal_plan.create"
FEATURE_RECIPE_BROWSE = "recipe.browse"
FEATURE_RECIPE_CREATE = "recipe.create"
FEATURE_AI_GENERATE = "ai.generate"
FEATURE_EXPORT_PDF = "export.pdf"
FEATURE_EXPORT_CSV = "export.csv"
FEATURE_EXPORT_EXCEL = "export.excel"
FEATURE_ANALYTICS = "analytics.dashboard"
FEATURE_BULK_OPERATIONS = "customers.bulk"
FEATURE_CUSTOM_BRANDING = "branding.custom"
FEATURE_API_ACCESS = "api.access"

QUOTA_CUSTOMERS = "customers"
QUOTA_MEAL_PLANS = "meal_plans"
QUOTA_AI_GENERATIONS = "ai_generations"
QUOTA_RECIPES = "recipes"


class TierDefinitionConfig(BaseModel):
    # Validate catalog entries loaded from settings before they reach the engine.
    tier_id: str
    rank: int
    name: str | None = None
    features: list[str] = Field(default_factory=list)
    # None (JSON null or "unlimited") means no ceiling.
    limits: dict[str, int | None] = Field(default_factory=dict)
    past_due_grace_hours: int | None = None

    @field_validator("limits", mode="before")
    @classmethod
    def _normalize_unlimited(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: None if isinstance(limit, str) and limit.lower() in {"unlimited", "inf"} else limit
                for key, limit in value.items()
            }
        return value


class TierCatalogConfig(BaseModel):
    tiers: list[TierDefinitionConfig]
    # Capabilities that consume a quota unit when authorized.
    quota_capabilities: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class TierDefinition:
    tier_id: str
    rank: int
    name: str
    features: frozenset[str]
    limits: dict[str, int | None] = field(default_factory=dict)
    past_due_grace_hours: int | None = None

    def limit_for(self, quota_name: str) -> int | None:
        # Quotas a tier does not list are closed (zero), never unlimited.
        if quota_name not in self.limits:
            return 0
        return self.limits[quota_name]


_BASE_FEATURES = [
    FEATURE_CUSTOMERS_INVITE,
    FEATURE_MEAL_PLAN_CREATE,
    FEATURE_RECIPE_BROWSE,
    FEATURE_RECIPE_CREATE,
    FEATURE_AI_GENERATE,
    FEATURE_EXPORT_PDF,
]
_PROFESSIONAL_FEATURES = _BASE_FEATURES + [
    FEATURE_EXPORT_CSV,
    FEATURE_ANALYTICS,
    FEATURE_BULK_OPERATIONS,
    FEATURE_CUSTOM_BRANDING,
]

DEFAULT_CATALOG: dict[str, Any] = {
    "tiers": [
        {
            "tier_id": "starter",
            "rank": 1,
            "name": "Starter",
            "features": list(_BASE_FEATURES),
            "limits": {QUOTA_CUSTOMERS: 9, QUOTA_MEAL_PLANS: 50, QUOTA_AI_GENERATIONS: 100, QUOTA_RECIPES: 1000},
        },
        {
            "tier_id": "professional",
            "rank": 2,
            "name": "Professional",
            "features": list(_PROFESSIONAL_FEATURES),
            "limits": {QUOTA_CUSTOMERS: 20, QUOTA_MEAL_PLANS: 200, QUOTA_AI_GENERATIONS: 500, QUOTA_RECIPES: 2500},
        },
        {
            "tier_id": "enterprise",
            "rank": 3,
            "name": "Enterprise",
            "features": _PROFESSIONAL_FEATURES + [FEATURE_EXPORT_EXCEL, FEATURE_API_ACCESS],
            "limits": {
                QUOTA_CUSTOMERS: None,
                QUOTA_MEAL_PLANS: None,
                QUOTA_AI_GENERATIONS: None,
                QUOTA_RECIPES: 4000,
            },
        },
    ],
    "quota_capabilities": {
        FEATURE_CUSTOMERS_INVITE: QUOTA_CUSTOMERS,
        FEATURE_MEAL_PLAN_CREATE: QUOTA_MEAL_PLANS,
        FEATURE_RECIPE_CREATE: QUOTA_RECIPES,
        FEATURE_AI_GENERATE: QUOTA_AI_GENERATIONS,
    },
}


class TierCatalog:
    """Read-only tier catalog: features, limits and rank for upgrade hints."""

    def __init__(self, tiers: list[TierDefinition], quota_capabilities: dict[str, str]) -> None:
        if not tiers:
            raise CatalogError("tier catalog is empty")
        self._tiers = {tier.tier_id: tier for tier in tiers}
        if len(self._tiers) != len(tiers):
            raise CatalogError("tier ids must be unique")
        self._ordered = sorted(tiers, key=lambda tier: tier.rank)
        self._quota_capabilities = dict(quota_capabilities)

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "TierCatalog":
        try:
            config = TierCatalogConfig.model_validate(raw)
        except ValidationError as exc:
            raise CatalogError(f"invalid tier catalog: {exc}") from exc
        tiers = [
            TierDefinition(
                tier_id=entry.tier_id,
                rank=entry.rank,
                name=entry.name or entry.tier_id.title(),
                features=frozenset(entry.features),
                limits=dict(entry.limits),
                past_due_grace_hours=entry.past_due_grace_hours,
            )
            for entry in config.tiers
        ]
        return cls(tiers, config.quota_capabilities)

    def tiers(self) -> list[TierDefinition]:
        return list(self._ordered)

    def get(self, tier_id: str) -> TierDefinition | None:
        return self._tiers.get(tier_id)

    def quota_for(self, capability: str) -> str | None:
        return self._quota_capabilities.get(capability)

    def quota_names(self, tier_id: str) -> list[str]:
        tier = self.get(tier_id)
        return sorted(tier.limits) if tier else []

    def rank_of(self, tier_id: str) -> int | None:
        tier = self.get(tier_id)
        return tier.rank if tier else None

    def upgrade_for(self, capability: str, current_tier_id: str | None) -> str | None:
        # Suggest the lowest ranked tier above the current one that would allow the capability.
        current_rank = self.rank_of(current_tier_id) if current_tier_id else None
        quota_name = self.quota_for(capability)
        current_limit: int | None = 0
        if current_tier_id and quota_name:
            tier = self.get(current_tier_id)
            current_limit = tier.limit_for(quota_name) if tier else 0
        for tier in self._ordered:
            if current_rank is not None and tier.rank <= current_rank:
                continue
            if capability not in tier.features:
                continue
            if quota_name is not None:
                limit = tier.limit_for(quota_name)
                if limit is not None and current_limit is not None and limit <= current_limit:
                    continue
                if limit == 0:
                    continue
            return tier.tier_id
        return None


def load_tier_catalog(settings: Settings | None = None) -> TierCatalog:
    # Prefer inline JSON, then a file path, then the built-in catalog.
    settings = settings or get_settings()
    if settings.tier_catalog_json:
        try:
            raw = json.loads(settings.tier_catalog_json)
        except ValueError as exc:
            raise CatalogError("tier_catalog_json is not valid JSON") from exc
        return TierCatalog.from_config(raw)
    if settings.tier_catalog_path:
        path = Path(settings.tier_catalog_path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CatalogError(f"cannot read tier catalog at {path}") from exc
        return TierCatalog.from_config(raw)
    return TierCatalog.from_config(DEFAULT_CATALOG)


def get_tier_definitions(settings: Settings | None = None) -> list[TierDefinition]:
    return load_tier_catalog(settings).tiers()
