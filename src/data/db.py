"""PostgreSQL connection and the table definitions the stores read from."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from src.access.flags import MODULE_FLAGS
from src.access.roles import STAFF_CAPABILITIES
from src.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("auth_id", String, nullable=False, unique=True, index=True),
    Column("tenant_id", String, nullable=True, index=True),
    Column("email", String, nullable=False),
    Column("full_name", String),
    Column("avatar_url", String),
    Column("is_active", Boolean, nullable=True),
    Column("created_at", DateTime(timezone=True)),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("role", String, nullable=False),
    Column("updated_at", DateTime(timezone=True)),
)

# One nullable column per toggle: NULL means "use the default"
staff_permissions = Table(
    "staff_permissions",
    metadata,
    Column("user_id", String, primary_key=True),
    *(Column(name, Boolean, nullable=True) for name in STAFF_CAPABILITIES),
    Column("updated_at", DateTime(timezone=True)),
)

tenant_config = Table(
    "tenant_config",
    metadata,
    Column("tenant_id", String, primary_key=True),
    Column("subscription_tier", String),
    Column("subscription_plan", String),
    Column("limit_overrides", JSONB),
    Column("apollo_api_key", String),
    Column("hunter_api_key", String),
    Column("apify_api_key", String),
    Column("features", JSONB),
    *(Column(name, Boolean, nullable=True) for name in MODULE_FLAGS),
    Column("updated_at", DateTime(timezone=True)),
)


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create any missing tables (local development only)."""
    engine = await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    log.info("schema_initialized")


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
