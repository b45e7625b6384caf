"""DB-backed stores for identity, staff overrides and tenant configuration."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.access.entitlements import TenantConfig
from src.access.flags import MODULE_FLAGS
from src.access.roles import STAFF_CAPABILITIES
from src.access.stores import UserRecord
from src.core.exceptions import StoreFetchError
from src.core.logging import get_logger

log = get_logger(__name__)


class _SqlStore:
    """Shared query helper: one row as a mapping, errors as StoreFetchError."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _fetch_one(self, sql: str, params: dict[str, Any]) -> Mapping[str, Any] | None:
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(sql), params)
                return result.mappings().first()
        except SQLAlchemyError as exc:
            log.warning("store_query_failed", store=type(self).__name__, error=str(exc))
            raise StoreFetchError(
                f"{type(self).__name__} query failed",
                {"params": params, "error": str(exc)},
            ) from exc


class SqlIdentityStore(_SqlStore):
    """Users and their roles."""

    async def fetch_user(self, auth_id: str) -> UserRecord | None:
        r = await self._fetch_one(
            "SELECT id, auth_id, tenant_id, email, full_name, is_active "
            "FROM users WHERE auth_id = :aid",
            {"aid": auth_id},
        )
        if r is None:
            return None
        return self._row_to_user(r)

    async def fetch_role(self, user_id: str) -> str | None:
        r = await self._fetch_one(
            "SELECT role FROM user_roles WHERE user_id = :uid",
            {"uid": user_id},
        )
        if r is None:
            return None
        return r["role"]

    @staticmethod
    def _row_to_user(r: Mapping[str, Any]) -> UserRecord:
        is_active = r.get("is_active")
        return UserRecord(
            id=r["id"],
            auth_id=r["auth_id"],
            tenant_id=r.get("tenant_id"),
            is_active=True if is_active is None else bool(is_active),
            email=r.get("email") or "",
            full_name=r.get("full_name"),
        )


class SqlStaffOverrideStore(_SqlStore):
    """Sparse per-user capability toggles."""

    async def fetch_overrides(self, user_id: str) -> Mapping[str, Any] | None:
        columns = ", ".join(STAFF_CAPABILITIES)
        r = await self._fetch_one(
            f"SELECT {columns} FROM staff_permissions WHERE user_id = :uid",  # noqa: S608
            {"uid": user_id},
        )
        if r is None:
            return None
        return {name: r.get(name) for name in STAFF_CAPABILITIES}


class SqlTenantConfigStore(_SqlStore):
    """Tier, plan, numeric overrides, credentials and module switches."""

    async def fetch_config(self, tenant_id: str) -> TenantConfig | None:
        r = await self._fetch_one(
            "SELECT * FROM tenant_config WHERE tenant_id = :tid",
            {"tid": tenant_id},
        )
        if r is None:
            return None
        return self._row_to_config(r)

    @staticmethod
    def _row_to_config(r: Mapping[str, Any]) -> TenantConfig:
        """Convert a DB row mapping to a TenantConfig."""
        overrides = _json_dict(r.get("limit_overrides"))
        features = _json_dict(r.get("features"))
        module_flags = {
            name: r[name]
            for name in MODULE_FLAGS
            if isinstance(r.get(name), bool)
        }
        return TenantConfig(
            tenant_id=r["tenant_id"],
            subscription_tier=r.get("subscription_tier"),
            subscription_plan=r.get("subscription_plan"),
            limit_overrides=overrides,
            apollo_api_key=r.get("apollo_api_key"),
            hunter_api_key=r.get("hunter_api_key"),
            apify_api_key=r.get("apify_api_key"),
            features=features,
            module_flags=module_flags,
        )


def _json_dict(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("config_json_invalid")
            return {}
    return dict(raw) if isinstance(raw, Mapping) else {}
