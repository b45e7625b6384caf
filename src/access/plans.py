"""Plan-based feature access (free / starter / professional / enterprise).

This is a separate entitlement authority from ``TierLimits``: it answers
"is this module part of the tenant's plan" with a precomputed boolean map.
Each feature becomes available at one plan and stays available on every
plan above it.
"""

from __future__ import annotations

from src.core.logging import get_logger
from src.core.types import SubscriptionPlan

log = get_logger(__name__)


# Minimum plan for each feature
FEATURE_REQUIRED_PLAN: dict[str, SubscriptionPlan] = {
    # Free
    "inbox": SubscriptionPlan.FREE,
    "appointments": SubscriptionPlan.FREE,
    "customers": SubscriptionPlan.FREE,
    "tasks": SubscriptionPlan.FREE,
    "basic_reports": SubscriptionPlan.FREE,
    # Starter
    "email_campaigns": SubscriptionPlan.STARTER,
    "basic_automation": SubscriptionPlan.STARTER,
    "team_3": SubscriptionPlan.STARTER,
    # Professional
    "voice_ai": SubscriptionPlan.PROFESSIONAL,
    "lead_gen": SubscriptionPlan.PROFESSIONAL,
    "whatsapp": SubscriptionPlan.PROFESSIONAL,
    "instagram": SubscriptionPlan.PROFESSIONAL,
    "facebook": SubscriptionPlan.PROFESSIONAL,
    "marketing_ai": SubscriptionPlan.PROFESSIONAL,
    "sales_ai": SubscriptionPlan.PROFESSIONAL,
    "hr_module": SubscriptionPlan.PROFESSIONAL,
    "unlimited_team": SubscriptionPlan.PROFESSIONAL,
    # Enterprise
    "api_access": SubscriptionPlan.ENTERPRISE,
    "custom_integrations": SubscriptionPlan.ENTERPRISE,
    "priority_support": SubscriptionPlan.ENTERPRISE,
    "white_label": SubscriptionPlan.ENTERPRISE,
}

PLAN_DISPLAY_NAMES: dict[SubscriptionPlan, str] = {
    SubscriptionPlan.FREE: "Free",
    SubscriptionPlan.STARTER: "Starter ($29/mo)",
    SubscriptionPlan.PROFESSIONAL: "Professional ($99/mo)",
    SubscriptionPlan.ENTERPRISE: "Enterprise ($299/mo)",
}


def build_feature_access(plan: SubscriptionPlan) -> dict[str, bool]:
    """Precompute the feature map for ``plan``."""
    return {feature: plan >= required for feature, required in FEATURE_REQUIRED_PLAN.items()}


PLAN_FEATURES: dict[SubscriptionPlan, dict[str, bool]] = {
    plan: build_feature_access(plan) for plan in SubscriptionPlan
}


def parse_plan(raw: str | None, default: SubscriptionPlan = SubscriptionPlan.FREE) -> SubscriptionPlan:
    plan = SubscriptionPlan.parse(raw)
    if plan is None:
        if raw is not None:
            log.warning("plan_unknown", plan=raw, fallback=default.value)
        return default
    return plan


def feature_access(plan: SubscriptionPlan) -> dict[str, bool]:
    """Copy of the precomputed map, safe for callers to mutate."""
    return dict(PLAN_FEATURES[plan])


def can_access(plan: SubscriptionPlan, feature: str) -> bool:
    """Unknown features are never accessible."""
    return PLAN_FEATURES[plan].get(feature, False)


def get_required_plan(feature: str) -> SubscriptionPlan:
    """Unknown features require enterprise."""
    return FEATURE_REQUIRED_PLAN.get(feature, SubscriptionPlan.ENTERPRISE)


def get_plan_display_name(plan: SubscriptionPlan) -> str:
    return PLAN_DISPLAY_NAMES[plan]
