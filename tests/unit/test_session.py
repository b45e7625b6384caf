"""Tests for AccessSession start-up, auth transitions and refresh paths."""

from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from config.settings import Settings
from src.access.entitlements import TenantConfig
from src.access.session import AccessSession
from src.access.stores import (
    InMemoryAuthNotifier,
    InMemoryIdentityStore,
    InMemoryStaffOverrideStore,
    InMemoryTenantConfigStore,
    InMemoryUsageStore,
    RawSession,
    UserRecord,
)
from src.core.exceptions import SessionClosedError, StoreFetchError
from src.core.types import Role, SubscriptionPlan, SubscriptionTier

TODAY = date(2024, 3, 15)

ALICE = UserRecord(id="u-alice", auth_id="auth-alice", tenant_id="t-acme", email="alice@acme.test")
BOB = UserRecord(id="u-bob", auth_id="auth-bob", tenant_id="t-globex", email="bob@globex.test")


class _CountingIdentityStore(InMemoryIdentityStore):
    """Counts lookups; optionally blocks one auth id until released."""

    def __init__(self) -> None:
        super().__init__()
        self.user_calls: list[str] = []
        self.blocked: dict[str, asyncio.Event] = {}

    async def fetch_user(self, auth_id: str) -> UserRecord | None:
        self.user_calls.append(auth_id)
        gate = self.blocked.get(auth_id)
        if gate is not None:
            await gate.wait()
        return await super().fetch_user(auth_id)


class _FlakyConfigStore(InMemoryTenantConfigStore):
    """Tenant config store that can be switched into an outage."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    async def fetch_config(self, tenant_id: str) -> TenantConfig | None:
        if self.failing:
            raise StoreFetchError("db down", {"tenant_id": tenant_id})
        return await super().fetch_config(tenant_id)


class _Backend:
    def __init__(self) -> None:
        self.notifier = InMemoryAuthNotifier()
        self.identity = _CountingIdentityStore()
        self.overrides = InMemoryStaffOverrideStore()
        self.configs = InMemoryTenantConfigStore()
        self.usage = InMemoryUsageStore()

        self.identity.add_user(ALICE, role="staff")
        self.identity.add_user(BOB, role="admin")
        self.configs.put(TenantConfig(
            tenant_id="t-acme",
            subscription_tier="professional",
            subscription_plan="professional",
            limit_overrides={"leads_per_month": 50},
        ))
        self.configs.put(TenantConfig(tenant_id="t-globex", subscription_tier="enterprise"))

    def session(self, **kwargs) -> AccessSession:
        params = {
            "notifier": self.notifier,
            "identity": self.identity,
            "staff_overrides": self.overrides,
            "tenant_configs": self.configs,
            "usage_store": self.usage,
            "settings": Settings(_env_file=None),
            "today": lambda: TODAY,
        }
        params.update(kwargs)
        return AccessSession(**params)


@pytest.fixture
def backend() -> _Backend:
    return _Backend()


class TestStartUp:
    @pytest.mark.asyncio
    async def test_listener_installed_before_load(self, backend: _Backend) -> None:
        backend.notifier = InMemoryAuthNotifier(RawSession(auth_id=ALICE.auth_id))
        session = backend.session()

        await session.start(poll=False)

        assert backend.notifier.subscriber_count == 1
        assert session.is_authenticated is True
        assert session.principal is None
        assert backend.identity.user_calls == []

        await session.settle()
        assert session.principal is not None
        assert session.principal.id == ALICE.id
        await session.close()

    @pytest.mark.asyncio
    async def test_anonymous_start(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        await session.settle()

        assert session.is_authenticated is False
        assert session.role is None
        assert session.has_permission("view_own") is False
        assert session.tier is SubscriptionTier.STARTER
        await session.close()

    @pytest.mark.asyncio
    async def test_start_twice_subscribes_once(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        await session.start(poll=False)
        assert backend.notifier.subscriber_count == 1
        await session.close()


class TestResolution:
    @pytest.mark.asyncio
    async def test_sign_in_resolves_everything(self, backend: _Backend) -> None:
        backend.usage.set_count("t-acme", "leads_generated", "2024-03", 50)
        session = backend.session()
        await session.start(poll=False)

        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.role is Role.STAFF
        assert session.tenant_id == "t-acme"
        assert session.tier is SubscriptionTier.PROFESSIONAL
        assert session.gate.plan is SubscriptionPlan.PROFESSIONAL
        assert session.limits.leads_per_month == 50
        assert session.has_reached_limit("leads") is True
        assert session.get_remaining_credits("leads") == 0
        assert session.get_usage_percentage("leads") == 100
        assert session.can_access("voice_ai") is True
        assert session.usage.days_remaining == 17
        await session.close()

    @pytest.mark.asyncio
    async def test_staff_overrides_applied(self, backend: _Backend) -> None:
        backend.overrides.set_overrides(ALICE.id, can_access_sales=True, can_send_messages=False)
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.has_permission("can_access_sales") is True
        assert session.has_permission("can_send_messages") is False
        assert session.has_permission("can_access_inbox") is True
        await session.close()

    @pytest.mark.asyncio
    async def test_overrides_not_fetched_for_admin(self, backend: _Backend) -> None:
        overrides = AsyncMock()
        session = backend.session(staff_overrides=overrides)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=BOB.auth_id))
        await session.settle()

        assert session.role is Role.ADMIN
        assert session.satisfies_role(Role.MANAGER) is True
        overrides.fetch_overrides.assert_not_awaited()
        await session.close()

    @pytest.mark.asyncio
    async def test_tenant_not_fetched_without_tenant_id(self, backend: _Backend) -> None:
        loner = UserRecord(id="u-loner", auth_id="auth-loner", tenant_id=None)
        backend.identity.add_user(loner, role="manager")
        configs = AsyncMock()
        usage = AsyncMock()
        session = backend.session(tenant_configs=configs, usage_store=usage)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=loner.auth_id))
        await session.settle()

        assert session.role is Role.MANAGER
        assert session.tenant_id is None
        configs.fetch_config.assert_not_awaited()
        usage.fetch_counters.assert_not_awaited()
        await session.close()

    @pytest.mark.asyncio
    async def test_inactive_staff_denied(self, backend: _Backend) -> None:
        gone = UserRecord(id="u-gone", auth_id="auth-gone", tenant_id="t-acme", is_active=False)
        backend.identity.add_user(gone, role="staff")
        backend.overrides.set_overrides(gone.id, can_access_sales=True)
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=gone.auth_id))
        await session.settle()

        assert session.principal is not None
        assert session.has_permission("can_access_sales") is False
        assert session.has_permission("view_own") is False
        assert session.satisfies_role(Role.STAFF) is False
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_role_is_restrictive(self, backend: _Backend) -> None:
        backend.identity.set_role(ALICE.id, "wizard")
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.role is Role.STAFF
        assert session.has_permission("can_access_inbox") is False
        await session.close()

    @pytest.mark.asyncio
    async def test_missing_profile_clears_identity(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id="auth-nobody"))
        await session.settle()

        assert session.is_authenticated is True
        assert session.principal is None
        assert session.has_permission("view_own") is False
        await session.close()


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_last_known_entitlement(self, backend: _Backend) -> None:
        configs = _FlakyConfigStore()
        configs.put(TenantConfig(tenant_id="t-globex", subscription_tier="enterprise", apollo_api_key="ak"))
        backend.usage.set_count("t-globex", "leads_generated", "2024-03", 150)
        session = backend.session(tenant_configs=configs)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=BOB.auth_id))
        await session.settle()

        configs.failing = True
        await session.refresh_tenant()

        assert session.tier is SubscriptionTier.ENTERPRISE
        assert session.limits.has_white_label is True
        assert session.limits.has_apollo_access is True
        assert session.has_reached_limit("leads") is False
        assert session.tenant_config is not None
        await session.close()

    @pytest.mark.asyncio
    async def test_first_load_failure_never_reports_limit_reached(self, backend: _Backend) -> None:
        configs = _FlakyConfigStore()
        configs.failing = True
        backend.usage.set_count("t-acme", "leads_generated", "2024-03", 150)
        session = backend.session(tenant_configs=configs)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.tier is SubscriptionTier.STARTER
        assert session.gate.entitlement.degraded is True
        assert session.usage.leads_generated == 150
        assert session.has_reached_limit("leads") is False
        assert session.gate.is_near_limit("leads") is False

        configs.failing = False
        configs.put(TenantConfig(tenant_id="t-acme", subscription_tier="starter"))
        await session.refresh_tenant()

        assert session.gate.entitlement.degraded is False
        assert session.has_reached_limit("leads") is True
        await session.close()

    @pytest.mark.asyncio
    async def test_config_failure_uses_defaults(self, backend: _Backend) -> None:
        configs = AsyncMock()
        configs.fetch_config.side_effect = StoreFetchError("db down")
        session = backend.session(tenant_configs=configs)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.tenant_id == "t-acme"
        assert session.tier is SubscriptionTier.STARTER
        assert session.gate.plan is SubscriptionPlan.FREE
        assert session.gate.is_module_enabled("hr_module") is True
        await session.close()

    @pytest.mark.asyncio
    async def test_usage_failure_reports_degraded_zero(self, backend: _Backend) -> None:
        usage = AsyncMock()
        usage.fetch_counters.side_effect = StoreFetchError("redis down")
        session = backend.session(usage_store=usage)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert session.usage.degraded is True
        assert session.has_reached_limit("leads") is False
        await session.close()

    @pytest.mark.asyncio
    async def test_role_failure_falls_back_to_staff(self, backend: _Backend) -> None:
        identity = AsyncMock()
        identity.fetch_user.return_value = BOB
        identity.fetch_role.side_effect = StoreFetchError("db down")
        session = backend.session(identity=identity)
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=BOB.auth_id))
        await session.settle()

        assert session.role is Role.STAFF
        assert session.has_permission("manage_users") is False
        await session.close()


class TestAuthTransitions:
    @pytest.mark.asyncio
    async def test_sign_out_clears_state(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        backend.notifier.sign_out()

        assert session.is_authenticated is False
        assert session.principal is None
        assert session.tenant_id is None
        assert session.role is None
        await session.close()

    @pytest.mark.asyncio
    async def test_token_refresh_does_not_reload(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        backend.notifier.refresh()
        await session.settle()

        assert backend.identity.user_calls == [ALICE.auth_id]
        await session.close()

    @pytest.mark.asyncio
    async def test_switching_users_drops_stale_load(self, backend: _Backend) -> None:
        release = asyncio.Event()
        backend.identity.blocked[ALICE.auth_id] = release
        session = backend.session()
        await session.start(poll=False)

        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        for _ in range(3):
            await asyncio.sleep(0)
        assert backend.identity.user_calls == [ALICE.auth_id]

        backend.notifier.sign_in(RawSession(auth_id=BOB.auth_id))
        release.set()
        await session.settle()

        assert session.principal is not None
        assert session.principal.id == BOB.id
        assert session.tenant_id == "t-globex"
        assert session.tier is SubscriptionTier.ENTERPRISE
        await session.close()

    @pytest.mark.asyncio
    async def test_refresh_principal_picks_up_role_change(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()
        assert session.satisfies_role(Role.MANAGER) is False

        backend.identity.set_role(ALICE.id, "manager")
        await session.refresh_principal()

        assert session.role is Role.MANAGER
        assert session.satisfies_role(Role.MANAGER) is True
        await session.close()

    @pytest.mark.asyncio
    async def test_refresh_tenant_picks_up_new_key(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()
        assert session.limits.has_apollo_access is False

        backend.configs.put(TenantConfig(
            tenant_id="t-acme",
            subscription_tier="professional",
            apollo_api_key="ak_live",
        ))
        await session.refresh_tenant()

        assert session.limits.has_apollo_access is True
        await session.close()


class TestUsageRefresh:
    @pytest.mark.asyncio
    async def test_record_consumption_refreshes(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        assert await session.record_consumption("leads", 10) is True

        assert session.usage.leads_generated == 10
        assert session.get_remaining_credits("leads") == 40
        await session.close()

    @pytest.mark.asyncio
    async def test_record_without_tenant(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start(poll=False)
        assert await session.record_consumption("leads") is False
        await session.close()

    @pytest.mark.asyncio
    async def test_poller_refreshes_usage(self, backend: _Backend) -> None:
        session = backend.session(poll_seconds=0.01)
        await session.start()
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        backend.usage.set_count("t-acme", "emails_sent_today", "2024-03-15", 12)
        await asyncio.sleep(0.05)

        assert session.usage.emails_sent_today == 12
        await session.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_unsubscribes_and_clears(self, backend: _Backend) -> None:
        session = backend.session()
        await session.start()
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        await session.settle()

        await session.close()

        assert session.closed is True
        assert backend.notifier.subscriber_count == 0
        assert session.principal is None
        assert session.is_authenticated is False

    @pytest.mark.asyncio
    async def test_close_abandons_inflight_load(self, backend: _Backend) -> None:
        release = asyncio.Event()
        backend.identity.blocked[ALICE.auth_id] = release
        session = backend.session()
        await session.start(poll=False)
        backend.notifier.sign_in(RawSession(auth_id=ALICE.auth_id))
        for _ in range(3):
            await asyncio.sleep(0)

        await session.close()

        assert session.principal is None

    @pytest.mark.asyncio
    async def test_start_after_close_raises(self, backend: _Backend) -> None:
        session = backend.session()
        await session.close()
        with pytest.raises(SessionClosedError):
            await session.start()
