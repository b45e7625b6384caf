"""Collaborator protocols read by the resolvers, plus in-memory implementations.

The in-memory stores back tests and local development. Production wiring
uses ``src.data.repositories`` (identity, overrides, tenant config) and
``src.data.cache.RedisUsageStore`` (usage counters).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from src.access.entitlements import TenantConfig
from src.core.logging import get_logger
from src.core.types import AuthEvent

log = get_logger(__name__)


@dataclass(frozen=True)
class RawSession:
    """Session as handed out by the identity provider, before any lookup."""

    auth_id: str
    access_token: str = ""
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class UserRecord:
    """Row from the identity store's users table."""

    id: str
    auth_id: str
    tenant_id: str | None
    is_active: bool = True
    email: str = ""
    full_name: str | None = None


AuthStateCallback = Callable[[AuthEvent, RawSession | None], None]


# ── Protocols ────────────────────────────────────────────────────

class AuthStateNotifier(Protocol):
    def subscribe(self, callback: AuthStateCallback) -> Callable[[], None]: ...

    async def current_session(self) -> RawSession | None: ...


class IdentityStore(Protocol):
    async def fetch_user(self, auth_id: str) -> UserRecord | None: ...

    async def fetch_role(self, user_id: str) -> str | None: ...


class StaffOverrideStore(Protocol):
    async def fetch_overrides(self, user_id: str) -> Mapping[str, Any] | None: ...


class TenantConfigStore(Protocol):
    async def fetch_config(self, tenant_id: str) -> TenantConfig | None: ...


class UsageStore(Protocol):
    async def fetch_counters(self, tenant_id: str, keys: Mapping[str, str]) -> dict[str, int]:
        """Return counter -> value for each ``counter -> period_key`` in ``keys``."""
        ...

    async def increment(self, tenant_id: str, counter: str, period_key: str, quantity: int = 1) -> int: ...


# ── In-memory implementations ────────────────────────────────────

class InMemoryAuthNotifier:
    """Synchronous fan-out of auth state changes, like a hosted auth client."""

    def __init__(self, session: RawSession | None = None) -> None:
        self._session = session
        self._callbacks: list[AuthStateCallback] = []

    def subscribe(self, callback: AuthStateCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    async def current_session(self) -> RawSession | None:
        return self._session

    def sign_in(self, session: RawSession) -> None:
        self._session = session
        self._emit(AuthEvent.SIGNED_IN, session)

    def sign_out(self) -> None:
        self._session = None
        self._emit(AuthEvent.SIGNED_OUT, None)

    def refresh(self) -> None:
        self._emit(AuthEvent.TOKEN_REFRESHED, self._session)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def _emit(self, event: AuthEvent, session: RawSession | None) -> None:
        log.debug("auth_state_changed", auth_event=event.value, has_session=session is not None)
        for callback in list(self._callbacks):
            callback(event, session)


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._users: dict[str, UserRecord] = {}  # auth_id -> user
        self._roles: dict[str, str] = {}  # user_id -> role

    def add_user(self, user: UserRecord, role: str | None = None) -> None:
        self._users[user.auth_id] = user
        if role is not None:
            self._roles[user.id] = role

    def set_role(self, user_id: str, role: str) -> None:
        self._roles[user_id] = role
        log.info("role_updated", user_id=user_id, role=role)

    async def fetch_user(self, auth_id: str) -> UserRecord | None:
        return self._users.get(auth_id)

    async def fetch_role(self, user_id: str) -> str | None:
        return self._roles.get(user_id)


class InMemoryStaffOverrideStore:
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def set_overrides(self, user_id: str, **toggles: bool | None) -> None:
        self._records.setdefault(user_id, {}).update(toggles)

    async def fetch_overrides(self, user_id: str) -> Mapping[str, Any] | None:
        record = self._records.get(user_id)
        return dict(record) if record is not None else None


class InMemoryTenantConfigStore:
    def __init__(self) -> None:
        self._configs: dict[str, TenantConfig] = {}

    def put(self, config: TenantConfig) -> None:
        self._configs[config.tenant_id] = config

    async def fetch_config(self, tenant_id: str) -> TenantConfig | None:
        return self._configs.get(tenant_id)


class InMemoryUsageStore:
    """Counters keyed by (tenant_id, period_key, counter)."""

    def __init__(self) -> None:
        self._counts: dict[tuple[str, str, str], int] = defaultdict(int)

    async def fetch_counters(self, tenant_id: str, keys: Mapping[str, str]) -> dict[str, int]:
        return {
            counter: self._counts.get((tenant_id, period_key, counter), 0)
            for counter, period_key in keys.items()
        }

    async def increment(self, tenant_id: str, counter: str, period_key: str, quantity: int = 1) -> int:
        key = (tenant_id, period_key, counter)
        self._counts[key] += quantity
        return self._counts[key]

    def set_count(self, tenant_id: str, counter: str, period_key: str, value: int) -> None:
        self._counts[(tenant_id, period_key, counter)] = value
