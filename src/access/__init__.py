"""Authorization and entitlement resolution: roles, tiers, plans, usage, gate."""

from src.access.entitlements import TIER_DEFAULTS, TenantConfig, TenantEntitlement, TierLimits, resolve_entitlement
from src.access.gate import FeatureGate
from src.access.roles import AuthenticatedPrincipal, PermissionResolver, StaffOverrides, satisfies_role
from src.access.session import AccessSession
from src.access.usage import UsageCounters, UsageMeter

__all__ = [
    "AccessSession",
    "AuthenticatedPrincipal",
    "FeatureGate",
    "PermissionResolver",
    "StaffOverrides",
    "TIER_DEFAULTS",
    "TenantConfig",
    "TenantEntitlement",
    "TierLimits",
    "UsageCounters",
    "UsageMeter",
    "resolve_entitlement",
    "satisfies_role",
]
