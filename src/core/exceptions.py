"""Custom exception hierarchy for tenantgate.

Decisions (deny, limit reached, inactive account) are return values, never
exceptions. Exceptions are reserved for backend failures and programming
errors; the session and meter boundaries catch the former and fail open.
"""

from __future__ import annotations

from typing import Any


class TenantGateError(Exception):
    """Base exception for all tenantgate errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Store Layer ──────────────────────────────────────────────────

class StoreError(TenantGateError):
    """An external record store failed."""


class StoreFetchError(StoreError):
    """Reading identity, overrides, tenant config or usage failed."""


class StoreWriteError(StoreError):
    """Incrementing a usage counter failed."""


# ── Resolver Layer ───────────────────────────────────────────────

class UnknownQuotaKindError(TenantGateError, ValueError):
    """A quota kind outside the metered set was requested."""


# ── Session Layer ────────────────────────────────────────────────

class SessionClosedError(TenantGateError):
    """The access session was used after close()."""
