"""Role table, staff overrides and the permission resolver.

Resolution for ``has_permission(name)``:

1. Inactive principal           → denied, whatever the role or overrides
2. Staff-toggle capability      → ``StaffOverrides`` field for staff,
                                  granted for every role above staff
3. Role table entry             → granted iff listed for the role
4. Anything else                → denied

Unknown role strings never elevate: they resolve to ``staff`` with every
override switched off.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from typing import Any, Union

from src.core.logging import get_logger
from src.core.types import Role

log = get_logger(__name__)


ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.MASTER_ADMIN: frozenset({
        "manage_tenants",
        "manage_users",
        "manage_roles",
        "view_analytics",
        "manage_settings",
        "manage_billing",
        "manage_integrations",
        "manage_campaigns",
        "manage_customers",
        "manage_deals",
        "manage_appointments",
        "manage_inbox",
        "manage_hr",
        "view_all",
        "edit_all",
        "delete_all",
    }),
    Role.ADMIN: frozenset({
        "manage_users",
        "view_analytics",
        "manage_settings",
        "manage_integrations",
        "manage_campaigns",
        "manage_customers",
        "manage_deals",
        "manage_appointments",
        "manage_inbox",
        "manage_hr",
        "view_all",
        "edit_all",
        "delete_all",
    }),
    Role.MANAGER: frozenset({
        "view_analytics",
        "manage_campaigns",
        "manage_customers",
        "manage_deals",
        "manage_appointments",
        "manage_inbox",
        "view_team",
        "edit_team",
    }),
    Role.STAFF: frozenset({
        "view_customers",
        "manage_appointments",
        "manage_inbox",
        "view_own",
        "edit_own",
    }),
}


@dataclass(frozen=True)
class StaffOverrides:
    """Per-user capability toggles, only consulted for the ``staff`` role.

    Defaults apply to any field the stored record leaves out, sets to null
    or holds as anything other than a boolean. Messaging, inbox,
    appointments, tasks and AI assistance are open by default; every other
    module is closed until an admin grants it.
    """

    can_access_inbox: bool = True
    can_access_appointments: bool = True
    can_access_customers: bool = False
    can_access_tasks: bool = True
    can_access_sales: bool = False
    can_access_marketing: bool = False
    can_access_hr: bool = False
    can_access_operations: bool = False
    can_access_analytics: bool = False
    can_access_settings: bool = False
    can_send_messages: bool = True
    can_take_over_ai: bool = False
    can_view_all_conversations: bool = False
    can_view_leads: bool = False
    can_use_ai_features: bool = True

    @classmethod
    def from_record(cls, record: Mapping[str, Any] | None) -> StaffOverrides:
        """Resolve a sparse store record into a full override set."""
        if not record:
            return cls()
        values: dict[str, bool] = {}
        for name in STAFF_CAPABILITIES:
            raw = record.get(name)
            if isinstance(raw, bool):
                values[name] = raw
        return cls(**values)

    @classmethod
    def restrictive(cls) -> StaffOverrides:
        """Every toggle off. Used when the role string could not be trusted."""
        return cls(**{name: False for name in STAFF_CAPABILITIES})

    def allows(self, capability: str) -> bool:
        return bool(getattr(self, capability, False))

    def as_dict(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in STAFF_CAPABILITIES}


STAFF_CAPABILITIES: tuple[str, ...] = tuple(f.name for f in fields(StaffOverrides))


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """The signed-in user as seen by the resolvers."""

    id: str
    role: Role
    tenant_id: str | None
    is_active: bool = True
    staff_overrides: StaffOverrides | None = None
    email: str = ""
    full_name: str | None = None

    @classmethod
    def build(
        cls,
        *,
        user_id: str,
        raw_role: str | None,
        tenant_id: str | None,
        is_active: bool = True,
        override_record: Mapping[str, Any] | None = None,
        email: str = "",
        full_name: str | None = None,
    ) -> AuthenticatedPrincipal:
        """Build a principal from raw store values.

        A missing role is the normal state of a freshly invited user and
        resolves to ``staff``. A role string outside the hierarchy resolves
        to the restrictive staff set and is logged.
        """
        role = Role.parse(raw_role) if raw_role is not None else Role.STAFF
        overrides: StaffOverrides | None = None

        if role is None:
            log.warning("role_unknown", user_id=user_id, role=raw_role)
            role = Role.STAFF
            overrides = StaffOverrides.restrictive()
        elif role is Role.STAFF:
            overrides = StaffOverrides.from_record(override_record)

        return cls(
            id=user_id,
            role=role,
            tenant_id=tenant_id,
            is_active=is_active,
            staff_overrides=overrides,
            email=email,
            full_name=full_name,
        )


class PermissionResolver:
    """Effective permission predicate for one principal."""

    def __init__(self, principal: AuthenticatedPrincipal | None) -> None:
        self._principal = principal
        self._permissions = self._resolve(principal)

    @property
    def principal(self) -> AuthenticatedPrincipal | None:
        return self._principal

    @property
    def permissions(self) -> frozenset[str]:
        return self._permissions

    def has_permission(self, name: str) -> bool:
        return name in self._permissions

    def __call__(self, name: str) -> bool:
        return self.has_permission(name)

    @staticmethod
    def _resolve(principal: AuthenticatedPrincipal | None) -> frozenset[str]:
        if principal is None or not principal.is_active:
            return frozenset()

        base = ROLE_PERMISSIONS.get(principal.role, frozenset())
        if principal.role is Role.STAFF:
            overrides = principal.staff_overrides or StaffOverrides()
            toggles = {name for name in STAFF_CAPABILITIES if overrides.allows(name)}
        else:
            toggles = set(STAFF_CAPABILITIES)
        return base | frozenset(toggles)


RoleRequirement = Union[Role, str, Iterable[Union[Role, str]]]


def minimum_rank(required: RoleRequirement) -> int | None:
    """Lowest rank among the acceptable roles, or None if none is valid."""
    if isinstance(required, (Role, str)):
        candidates: Iterable[Role | str] = (required,)
    else:
        candidates = required

    ranks: list[int] = []
    for candidate in candidates:
        role = Role.parse(candidate)
        if role is None:
            log.warning("route_guard_unknown_role", role=str(candidate))
            continue
        ranks.append(role.rank)
    return min(ranks) if ranks else None


def satisfies_role(principal: AuthenticatedPrincipal | None, required: RoleRequirement) -> bool:
    """Route guard: the principal's role is at or above any acceptable role."""
    if principal is None or not principal.is_active:
        return False
    threshold = minimum_rank(required)
    if threshold is None:
        return False
    return principal.role.rank >= threshold


def is_master_admin(principal: AuthenticatedPrincipal | None) -> bool:
    return satisfies_role(principal, Role.MASTER_ADMIN)


def is_admin(principal: AuthenticatedPrincipal | None) -> bool:
    return satisfies_role(principal, Role.ADMIN)


def is_manager(principal: AuthenticatedPrincipal | None) -> bool:
    return satisfies_role(principal, Role.MANAGER)
