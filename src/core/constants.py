"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Usage Periods ────────────────────────────────────────────────
PERIOD_MONTHLY = "monthly"
PERIOD_DAILY = "daily"

# ── Usage Thresholds ─────────────────────────────────────────────
NEAR_LIMIT_PERCENT = 80.0           # Warn before the hard stop
MAX_USAGE_PERCENT = 100.0
UNLIMITED = -1                      # Any limit <= 0 means unlimited

# ── Refresh ──────────────────────────────────────────────────────
DEFAULT_USAGE_POLL_SECONDS = 60
DEFAULT_USAGE_KEY_TTL_DAYS = 40     # Outlives the longest (monthly) period

# ── Redis Keys ───────────────────────────────────────────────────
USAGE_KEY_PREFIX = "usage"

# ── Entitlement Sources ──────────────────────────────────────────
SOURCE_TIER = "tier"
SOURCE_OVERRIDE = "override"
SOURCE_CREDENTIAL = "credential"
