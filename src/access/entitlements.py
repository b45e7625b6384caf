"""Tier limit table and the tenant entitlement resolver.

Effective limits for a tenant:

- numeric quota  → tenant override if present and > 0, else tier default
                   (a stored 0 means "not set", never "zero quota")
- credential flag → tier default OR tenant holds a usable key for that
                    integration
- other flags    → tier default

The result is recomputed from ``TenantConfig`` whenever it is needed and is
never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any

from src.core.constants import SOURCE_CREDENTIAL, SOURCE_OVERRIDE, SOURCE_TIER, UNLIMITED
from src.core.logging import get_logger
from src.core.types import SubscriptionPlan, SubscriptionTier

log = get_logger(__name__)


@dataclass(frozen=True)
class TierLimits:
    """Quotas and feature flags for one subscription tier."""

    # Numeric quotas (<= 0 means unlimited)
    leads_per_month: int
    b2b_searches_per_day: int
    intent_searches_per_day: int
    active_sequences: int
    emails_per_day: int
    whatsapp_per_day: int
    calls_per_day: int
    max_users: int
    voice_minutes: int

    # Feature flags
    has_google_search: bool = True
    has_apollo_access: bool = False
    has_hunter_access: bool = False
    has_apify_access: bool = False
    has_ai_scoring: bool = False
    has_intent_leads: bool = False
    has_api_access: bool = False
    has_white_label: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


QUOTA_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(TierLimits) if not f.name.startswith("has_")
)
FLAG_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(TierLimits) if f.name.startswith("has_")
)


TIER_DEFAULTS: dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.STARTER: TierLimits(
        leads_per_month=100,
        b2b_searches_per_day=10,
        intent_searches_per_day=0,
        active_sequences=3,
        emails_per_day=100,
        whatsapp_per_day=50,
        calls_per_day=10,
        max_users=3,
        voice_minutes=60,
    ),
    SubscriptionTier.PROFESSIONAL: TierLimits(
        leads_per_month=1_000,
        b2b_searches_per_day=50,
        intent_searches_per_day=10,
        active_sequences=10,
        emails_per_day=500,
        whatsapp_per_day=250,
        calls_per_day=50,
        max_users=10,
        voice_minutes=300,
        has_hunter_access=True,
        has_apify_access=True,
        has_ai_scoring=True,
        has_intent_leads=True,
    ),
    SubscriptionTier.ENTERPRISE: TierLimits(
        leads_per_month=10_000,
        b2b_searches_per_day=500,
        intent_searches_per_day=100,
        active_sequences=UNLIMITED,
        emails_per_day=5_000,
        whatsapp_per_day=2_500,
        calls_per_day=500,
        max_users=UNLIMITED,
        voice_minutes=2_000,
        has_apollo_access=True,
        has_hunter_access=True,
        has_apify_access=True,
        has_ai_scoring=True,
        has_intent_leads=True,
        has_api_access=True,
        has_white_label=True,
    ),
}

TIER_DISPLAY_NAMES: dict[SubscriptionTier, str] = {
    SubscriptionTier.STARTER: "Starter",
    SubscriptionTier.PROFESSIONAL: "Professional",
    SubscriptionTier.ENTERPRISE: "Enterprise",
}

# Integration flag -> TenantConfig attribute holding its API key
CREDENTIAL_FLAGS: dict[str, str] = {
    "has_apollo_access": "apollo_api_key",
    "has_hunter_access": "hunter_api_key",
    "has_apify_access": "apify_api_key",
}

_FLAG_LABELS: dict[str, str] = {
    "has_google_search": "Google Search",
    "has_apollo_access": "Apollo.io data",
    "has_hunter_access": "Hunter.io email finding",
    "has_apify_access": "Apify scraping",
    "has_ai_scoring": "AI lead scoring",
    "has_intent_leads": "Intent detection",
    "has_api_access": "API access",
    "has_white_label": "White labelling",
}


@dataclass
class TenantConfig:
    """Tenant configuration record as read from the tenant config store."""

    tenant_id: str
    subscription_tier: str | None = None
    subscription_plan: str | None = None
    limit_overrides: dict[str, int] = field(default_factory=dict)
    apollo_api_key: str | None = None
    hunter_api_key: str | None = None
    apify_api_key: str | None = None
    features: dict[str, Any] = field(default_factory=dict)
    module_flags: dict[str, bool] = field(default_factory=dict)

    def has_credential(self, attribute: str) -> bool:
        value = getattr(self, attribute, None)
        return isinstance(value, str) and bool(value.strip())


@dataclass(frozen=True)
class TenantEntitlement:
    """Effective limits for one tenant plus where each value came from.

    A ``degraded`` entitlement stands in for a config that could not be
    read. Its quotas are advisory: no limit counts as reached.
    """

    tenant_id: str
    tier: SubscriptionTier
    limits: TierLimits
    sources: dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    degraded: bool = False

    def source_of(self, name: str) -> str:
        return self.sources.get(name, SOURCE_TIER)


def parse_tier(raw: str | None, tenant_id: str = "", default: SubscriptionTier = SubscriptionTier.STARTER) -> SubscriptionTier:
    """Map a stored tier string to a tier, falling back to ``default``."""
    tier = SubscriptionTier.parse(raw)
    if tier is None:
        if raw is not None:
            log.warning("tier_unknown", tenant_id=tenant_id, tier=raw, fallback=default.value)
        return default
    return tier


def resolve_entitlement(
    config: TenantConfig,
    default_tier: SubscriptionTier = SubscriptionTier.STARTER,
) -> TenantEntitlement:
    """Overlay tenant overrides and credentials on the tier defaults."""
    tier = parse_tier(config.subscription_tier, config.tenant_id, default_tier)
    base = TIER_DEFAULTS[tier]
    changes: dict[str, int | bool] = {}
    sources: dict[str, str] = {}

    for name, raw in config.limit_overrides.items():
        if name not in QUOTA_FIELDS:
            log.warning("limit_override_ignored", tenant_id=config.tenant_id, field=name)
            continue
        value = _as_positive_int(raw)
        if value is None:
            continue
        changes[name] = value
        sources[name] = SOURCE_OVERRIDE

    for flag, attribute in CREDENTIAL_FLAGS.items():
        if getattr(base, flag):
            continue
        if config.has_credential(attribute):
            changes[flag] = True
            sources[flag] = SOURCE_CREDENTIAL

    limits = replace(base, **changes) if changes else base
    if changes:
        log.debug(
            "entitlement_resolved",
            tenant_id=config.tenant_id,
            tier=tier.value,
            overridden=sorted(changes),
        )
    return TenantEntitlement(tenant_id=config.tenant_id, tier=tier, limits=limits, sources=sources)


def default_entitlement(
    tenant_id: str,
    tier: SubscriptionTier = SubscriptionTier.STARTER,
    degraded: bool = False,
) -> TenantEntitlement:
    """Tier defaults with no tenant overlay, used when config is unavailable."""
    return TenantEntitlement(tenant_id=tenant_id, tier=tier, limits=TIER_DEFAULTS[tier], degraded=degraded)


def _as_positive_int(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


# ── Upgrade helpers ──────────────────────────────────────────────

def get_required_tier(flag: str) -> SubscriptionTier | None:
    """Lowest tier whose defaults grant ``flag``; None if no tier does."""
    if flag not in FLAG_FIELDS:
        return None
    for tier in SubscriptionTier:
        if getattr(TIER_DEFAULTS[tier], flag):
            return tier
    return None


def get_upgrade_reason(flag: str) -> str:
    label = _FLAG_LABELS.get(flag, flag)
    tier = get_required_tier(flag)
    if tier is None:
        return f"{label} is not available on any plan."
    reason = f"{label} requires the {TIER_DISPLAY_NAMES[tier]} plan or higher."
    integration_key = CREDENTIAL_FLAGS.get(flag)
    if integration_key is not None:
        reason += " Adding your own API key in Integrations also unlocks it."
    return reason


def get_tier_display_name(tier: SubscriptionTier) -> str:
    return TIER_DISPLAY_NAMES[tier]


def is_upgrade(current: SubscriptionTier | SubscriptionPlan, target: SubscriptionTier | SubscriptionPlan) -> bool:
    """True when ``target`` sits above ``current`` in the same vocabulary."""
    if type(current) is not type(target):
        msg = f"cannot compare {type(current).__name__} with {type(target).__name__}"
        raise TypeError(msg)
    return target > current
