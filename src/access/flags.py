"""Tenant module switches (sales, marketing, HR, ...).

Module switches are configured per tenant by admins and are independent of
plan and tier. Lookup order for a name:

1. no tenant config loaded      → enabled
2. ``features`` JSON entry      → its boolean value
3. top-level module flag        → its boolean value
4. otherwise                    → enabled
"""

from __future__ import annotations

from src.access.entitlements import TenantConfig

MODULE_FLAGS: tuple[str, ...] = (
    "sales_module",
    "marketing_module",
    "hr_module",
    "operations_module",
    "communications_module",
    "analytics_module",
    "has_voice",
    "has_whatsapp",
    "has_email",
    "has_sms",
    "ai_insights",
    "custom_reports",
)


class TenantModuleFlags:
    """Read-only view over a tenant's module switches."""

    def __init__(self, config: TenantConfig | None) -> None:
        self._config = config

    def is_enabled(self, name: str) -> bool:
        if self._config is None:
            return True

        value = self._config.features.get(name)
        if isinstance(value, bool):
            return value

        value = self._config.module_flags.get(name)
        if isinstance(value, bool):
            return value

        return True

    def snapshot(self) -> dict[str, bool]:
        return {name: self.is_enabled(name) for name in MODULE_FLAGS}
