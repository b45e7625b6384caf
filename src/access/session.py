"""Per-session access context: loads inputs, resolves them, exposes the gate.

Start-up is two-phase:

1. install the auth-state listener, then
2. read any existing session and enqueue the dependent principal load as
   its own task on the next loop turn.

The listener itself is synchronous. It only records the raw session and
schedules the profile/role fetch; it never awaits the store that invoked
it, so a notifier that holds its own lock while fanning out cannot be
re-entered.

Loads are gated and guarded rather than locked:

- tenant config and usage are not fetched until a principal has yielded
  a tenant id;
- staff overrides are not fetched unless the role resolves to staff;
- after every await the load re-checks that its auth id / tenant id still
  owns the session and silently drops the result otherwise.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import date
from typing import Any

from config.settings import Settings, get_settings
from src.access.entitlements import (
    TenantConfig,
    TenantEntitlement,
    TierLimits,
    default_entitlement,
    resolve_entitlement,
)
from src.access.flags import TenantModuleFlags
from src.access.gate import FeatureGate
from src.access.plans import parse_plan
from src.access.roles import AuthenticatedPrincipal, PermissionResolver, RoleRequirement
from src.access.stores import (
    AuthStateNotifier,
    IdentityStore,
    RawSession,
    StaffOverrideStore,
    TenantConfigStore,
    UsageStore,
)
from src.access.usage import UsageCounters, UsageMeter, utc_today
from src.core.exceptions import SessionClosedError
from src.core.logging import get_logger
from src.core.types import AuthEvent, QuotaKind, Role, SubscriptionPlan, SubscriptionTier

log = get_logger(__name__)


class AccessSession:
    """Everything the UI layer needs to know about the signed-in user."""

    def __init__(
        self,
        *,
        notifier: AuthStateNotifier,
        identity: IdentityStore,
        staff_overrides: StaffOverrideStore,
        tenant_configs: TenantConfigStore,
        usage_store: UsageStore,
        settings: Settings | None = None,
        poll_seconds: float | None = None,
        today: Callable[[], date] = utc_today,
    ) -> None:
        settings = settings or get_settings()
        self._notifier = notifier
        self._identity = identity
        self._staff_overrides = staff_overrides
        self._tenant_configs = tenant_configs
        self._usage_store = usage_store
        self._poll_seconds = poll_seconds if poll_seconds is not None else settings.usage_poll_seconds
        self._default_tier = SubscriptionTier(settings.default_tier)
        self._default_plan = SubscriptionPlan(settings.default_plan)
        self._today = today

        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._pending_spawns = 0
        self._poller: asyncio.Task[None] | None = None
        self._closed = False

        self._raw_session: RawSession | None = None
        self._principal: AuthenticatedPrincipal | None = None
        self._tenant_id: str | None = None
        self._config: TenantConfig | None = None
        self._entitlement: TenantEntitlement | None = None
        self._plan: SubscriptionPlan | None = None
        self._meter: UsageMeter | None = None
        self._gate: FeatureGate | None = None

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self, poll: bool = True) -> None:
        """Install the listener, then enqueue the load for any existing session."""
        if self._closed:
            raise SessionClosedError("access session already closed")
        if self._unsubscribe is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._notifier.subscribe(self._on_auth_state_change)
        log.debug("auth_listener_installed")

        session = await self._notifier.current_session()
        if self._raw_session is None and not self._closed:
            self._on_auth_state_change(AuthEvent.INITIAL_SESSION, session)

        if poll:
            self._poller = self._loop.create_task(self._poll_loop(), name="usage_poller")

    async def close(self) -> None:
        """Tear down: stop listening, abandon in-flight loads, drop state."""
        if self._closed:
            return
        self._closed = True

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        pending = list(self._tasks)
        if self._poller is not None:
            pending.append(self._poller)
            self._poller = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        self._raw_session = None
        self._clear_identity()
        log.info("access_session_closed")

    async def settle(self) -> None:
        """Wait until every scheduled load has finished."""
        await asyncio.sleep(0)
        while self._pending_spawns or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Auth state listener (synchronous) ────────────────────────

    def _on_auth_state_change(self, event: AuthEvent, session: RawSession | None) -> None:
        if self._closed:
            return

        previous = self._raw_session
        self._raw_session = session

        if session is None:
            if previous is not None:
                log.info("session_ended", auth_event=event.value)
            self._clear_identity()
            return

        already_loaded = (
            event is AuthEvent.TOKEN_REFRESHED
            and previous is not None
            and previous.auth_id == session.auth_id
            and self._principal is not None
        )
        if already_loaded:
            return

        if previous is not None and previous.auth_id != session.auth_id:
            self._clear_identity()

        self._defer(self._spawn_principal_load, session.auth_id)

    def _defer(self, callback: Callable[..., None], *args: Any) -> None:
        assert self._loop is not None
        self._pending_spawns += 1
        self._loop.call_soon(callback, *args)

    def _spawn_principal_load(self, auth_id: str) -> None:
        self._pending_spawns -= 1
        if not self._owns_auth(auth_id):
            return
        self._spawn(self._load_principal(auth_id), name=f"principal_load:{auth_id}")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        assert self._loop is not None
        task = self._loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("session_load_failed", task=task.get_name(), error=str(exc))

    # ── Loads ────────────────────────────────────────────────────

    def _owns_auth(self, auth_id: str) -> bool:
        return (
            not self._closed
            and self._raw_session is not None
            and self._raw_session.auth_id == auth_id
        )

    def _owns_tenant(self, tenant_id: str) -> bool:
        return not self._closed and self._tenant_id == tenant_id

    async def _load_principal(self, auth_id: str) -> None:
        try:
            user = await self._identity.fetch_user(auth_id)
        except Exception as exc:
            log.error("identity_fetch_failed", auth_id=auth_id, error=str(exc))
            return
        if not self._owns_auth(auth_id):
            log.debug("stale_identity_dropped", auth_id=auth_id)
            return
        if user is None:
            log.info("user_profile_missing", auth_id=auth_id)
            self._clear_identity()
            return

        try:
            raw_role = await self._identity.fetch_role(user.id)
        except Exception as exc:
            log.warning("role_fetch_failed", user_id=user.id, error=str(exc), fallback=Role.STAFF.value)
            raw_role = None
        if not self._owns_auth(auth_id):
            log.debug("stale_role_dropped", auth_id=auth_id)
            return

        override_record = None
        if raw_role is None or Role.parse(raw_role) is Role.STAFF:
            try:
                override_record = await self._staff_overrides.fetch_overrides(user.id)
            except Exception as exc:
                log.warning("staff_overrides_fetch_failed", user_id=user.id, error=str(exc))
            if not self._owns_auth(auth_id):
                log.debug("stale_overrides_dropped", auth_id=auth_id)
                return

        principal = AuthenticatedPrincipal.build(
            user_id=user.id,
            raw_role=raw_role,
            tenant_id=user.tenant_id,
            is_active=user.is_active,
            override_record=override_record,
            email=user.email,
            full_name=user.full_name,
        )
        self._principal = principal
        self._gate = None
        log.info(
            "principal_resolved",
            user_id=principal.id,
            role=principal.role.value,
            tenant_id=principal.tenant_id,
            is_active=principal.is_active,
        )

        if principal.tenant_id is None:
            self._clear_tenant()
            return
        if principal.tenant_id != self._tenant_id:
            self._clear_tenant()
            self._tenant_id = principal.tenant_id
        await self._load_tenant(principal.tenant_id)

    async def _load_tenant(self, tenant_id: str) -> None:
        try:
            config = await self._tenant_configs.fetch_config(tenant_id)
        except Exception as exc:
            if not self._owns_tenant(tenant_id):
                return
            known_good = self._entitlement is not None and not self._entitlement.degraded
            log.warning(
                "tenant_config_fetch_failed",
                tenant_id=tenant_id,
                error=str(exc),
                fallback="last_known" if known_good else self._default_tier.value,
            )
            if not known_good:
                self._apply_config(tenant_id, None, degraded=True)
            await self.refresh_usage()
            return
        if not self._owns_tenant(tenant_id):
            log.debug("stale_tenant_config_dropped", tenant_id=tenant_id)
            return

        self._apply_config(tenant_id, config)
        await self.refresh_usage()

    def _apply_config(self, tenant_id: str, config: TenantConfig | None, degraded: bool = False) -> None:
        """Resolve entitlement and plan; ``degraded`` means the config was unreadable."""
        self._config = config
        effective = config or TenantConfig(tenant_id=tenant_id)
        if degraded:
            self._entitlement = default_entitlement(tenant_id, self._default_tier, degraded=True)
        else:
            self._entitlement = resolve_entitlement(effective, self._default_tier)
        self._plan = parse_plan(effective.subscription_plan, self._default_plan)

        if self._meter is None or self._meter.tenant_id != tenant_id:
            self._meter = UsageMeter(self._usage_store, tenant_id, self._entitlement, today=self._today)
        else:
            self._meter.update_entitlement(self._entitlement)
        self._gate = None
        log.info(
            "tenant_entitlement_resolved",
            tenant_id=tenant_id,
            tier=self._entitlement.tier.value,
            plan=self._plan.value,
            degraded=self._entitlement.degraded,
        )

    # ── Refresh ──────────────────────────────────────────────────

    async def refresh_usage(self) -> UsageCounters | None:
        """Re-read usage counters; a no-op until a tenant is known."""
        meter = self._meter
        if meter is None:
            return None
        counters = await meter.refresh()
        if not self._owns_tenant(meter.tenant_id) or self._meter is not meter:
            return None
        self._gate = None
        return counters

    async def refresh_principal(self) -> None:
        """Re-fetch role and overrides, e.g. after an admin changed them."""
        session = self._raw_session
        if session is None or self._closed:
            return
        await self._load_principal(session.auth_id)

    async def refresh_tenant(self) -> None:
        """Re-fetch tenant config, e.g. after a tier change or a new API key."""
        tenant_id = self._tenant_id
        if tenant_id is None or self._closed:
            return
        await self._load_tenant(tenant_id)

    async def record_consumption(self, kind: QuotaKind | str, quantity: int = 1) -> bool:
        """Count a metered action and refresh usage immediately."""
        meter = self._meter
        if meter is None:
            log.warning("usage_record_without_tenant", kind=str(kind))
            return False
        recorded = await meter.record(kind, quantity)
        if self._meter is meter:
            self._gate = None
        return recorded

    async def _poll_loop(self) -> None:
        """Refresh usage on a fixed interval until closed."""
        while not self._closed:
            try:
                await asyncio.sleep(self._poll_seconds)
            except asyncio.CancelledError:
                break
            try:
                await self.refresh_usage()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("usage_poll_failed", tenant_id=self._tenant_id, error=str(exc))

    # ── State ────────────────────────────────────────────────────

    def _clear_identity(self) -> None:
        self._principal = None
        self._clear_tenant()

    def _clear_tenant(self) -> None:
        self._tenant_id = None
        self._config = None
        self._entitlement = None
        self._plan = None
        self._meter = None
        self._gate = None

    @property
    def raw_session(self) -> RawSession | None:
        return self._raw_session

    @property
    def is_authenticated(self) -> bool:
        return self._raw_session is not None

    @property
    def principal(self) -> AuthenticatedPrincipal | None:
        return self._principal

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id

    @property
    def tenant_config(self) -> TenantConfig | None:
        return self._config

    @property
    def gate(self) -> FeatureGate:
        """The current decision surface, rebuilt only after inputs change."""
        if self._gate is None:
            tenant_id = self._tenant_id or ""
            entitlement = self._entitlement or default_entitlement(tenant_id, self._default_tier)
            usage = (
                self._meter.counters
                if self._meter is not None
                else UsageCounters.empty(tenant_id, self._today())
            )
            self._gate = FeatureGate(
                self._principal,
                entitlement,
                usage,
                plan=self._plan or self._default_plan,
                flags=TenantModuleFlags(self._config),
            )
        return self._gate

    # ── Pass-throughs ────────────────────────────────────────────

    @property
    def role(self) -> Role | None:
        return self.gate.role

    @property
    def permissions(self) -> PermissionResolver:
        return self.gate.permissions

    @property
    def tier(self) -> SubscriptionTier:
        return self.gate.tier

    @property
    def limits(self) -> TierLimits:
        return self.gate.limits

    @property
    def usage(self) -> UsageCounters:
        return self.gate.usage

    def has_permission(self, name: str) -> bool:
        return self.gate.has_permission(name)

    def satisfies_role(self, required: RoleRequirement) -> bool:
        return self.gate.satisfies_role(required)

    def can_access(self, feature: str) -> bool:
        return self.gate.can_access(feature)

    def has_reached_limit(self, kind: QuotaKind | str) -> bool:
        return self.gate.has_reached_limit(kind)

    def get_remaining_credits(self, kind: QuotaKind | str) -> int:
        return self.gate.get_remaining_credits(kind)

    def get_usage_percentage(self, kind: QuotaKind | str) -> float:
        return self.gate.get_usage_percentage(kind)
