"""The single decision surface for "am I allowed to do X".

``FeatureGate`` is built from already-resolved inputs and is immutable:
every method is a pure function of the principal, entitlement, usage
snapshot, plan and module flags it was built with. It never fetches;
refreshing inputs and rebuilding the gate is the session's job.
"""

from __future__ import annotations

from src.access import plans
from src.access.entitlements import (
    FLAG_FIELDS,
    TenantEntitlement,
    TierLimits,
    get_required_tier,
    get_upgrade_reason,
)
from src.access.flags import TenantModuleFlags
from src.access.roles import AuthenticatedPrincipal, PermissionResolver, RoleRequirement, satisfies_role
from src.access.usage import (
    UsageCounters,
    get_remaining_credits,
    get_usage_percentage,
    has_reached_limit,
    is_near_limit,
    resolve_kind,
)
from src.core.types import QuotaKind, Role, SubscriptionPlan, SubscriptionTier


class FeatureGate:
    """Permission and entitlement checks for one resolved session."""

    def __init__(
        self,
        principal: AuthenticatedPrincipal | None,
        entitlement: TenantEntitlement,
        usage: UsageCounters,
        plan: SubscriptionPlan = SubscriptionPlan.FREE,
        flags: TenantModuleFlags | None = None,
    ) -> None:
        self._principal = principal
        self._permissions = PermissionResolver(principal)
        self._entitlement = entitlement
        self._usage = usage
        self._plan = plan
        self._features = plans.PLAN_FEATURES[plan]
        self._flags = flags or TenantModuleFlags(None)

    # ── Resolved state ───────────────────────────────────────────

    @property
    def principal(self) -> AuthenticatedPrincipal | None:
        return self._principal

    @property
    def role(self) -> Role | None:
        return self._principal.role if self._principal is not None else None

    @property
    def permissions(self) -> PermissionResolver:
        return self._permissions

    @property
    def tier(self) -> SubscriptionTier:
        return self._entitlement.tier

    @property
    def plan(self) -> SubscriptionPlan:
        return self._plan

    @property
    def entitlement(self) -> TenantEntitlement:
        return self._entitlement

    @property
    def limits(self) -> TierLimits:
        return self._entitlement.limits

    @property
    def usage(self) -> UsageCounters:
        return self._usage

    @property
    def features(self) -> dict[str, bool]:
        return dict(self._features)

    # ── Roles and permissions ────────────────────────────────────

    def has_permission(self, name: str) -> bool:
        return self._permissions.has_permission(name)

    def satisfies_role(self, required: RoleRequirement) -> bool:
        return satisfies_role(self._principal, required)

    # ── Plan features ────────────────────────────────────────────

    def can_access(self, feature: str) -> bool:
        return self._features.get(feature, False)

    def requires_upgrade(self, feature: str) -> bool:
        return not self.can_access(feature)

    def get_required_plan(self, feature: str) -> SubscriptionPlan:
        return plans.get_required_plan(feature)

    # ── Tier feature flags ───────────────────────────────────────

    def can_use_feature(self, flag: str) -> bool:
        if flag not in FLAG_FIELDS:
            return False
        return bool(getattr(self._entitlement.limits, flag))

    def get_required_tier(self, flag: str) -> SubscriptionTier | None:
        return get_required_tier(flag)

    def get_upgrade_reason(self, flag: str) -> str:
        return get_upgrade_reason(flag)

    # ── Quotas ───────────────────────────────────────────────────

    def has_reached_limit(self, kind: QuotaKind | str) -> bool:
        if self._entitlement.degraded:
            resolve_kind(kind)
            return False
        return has_reached_limit(self._entitlement.limits, self._usage, kind)

    def get_remaining_credits(self, kind: QuotaKind | str) -> int:
        return get_remaining_credits(self._entitlement.limits, self._usage, kind)

    def get_usage_percentage(self, kind: QuotaKind | str) -> float:
        return get_usage_percentage(self._entitlement.limits, self._usage, kind)

    def is_near_limit(self, kind: QuotaKind | str) -> bool:
        if self._entitlement.degraded:
            resolve_kind(kind)
            return False
        return is_near_limit(self._entitlement.limits, self._usage, kind)

    # ── Tenant modules ───────────────────────────────────────────

    def is_module_enabled(self, name: str) -> bool:
        return self._flags.is_enabled(name)
