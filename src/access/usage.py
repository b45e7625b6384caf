"""Usage metering against a tenant's entitled quotas.

Counters are period-scoped: lead and voice-minute counts reset with the
calendar month, search and outreach counts with the calendar day. Periods
roll over implicitly because every read is keyed by the current period.

The meter fails open: if the usage store cannot be read it reports zero
usage (flagged ``degraded``) instead of raising, so a backend outage never
locks users out of actions they are entitled to.
"""

from __future__ import annotations

import calendar
from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone

from src.access.entitlements import TenantEntitlement, TierLimits
from src.access.stores import UsageStore
from src.core.constants import MAX_USAGE_PERCENT, NEAR_LIMIT_PERCENT, PERIOD_DAILY, PERIOD_MONTHLY
from src.core.exceptions import UnknownQuotaKindError
from src.core.logging import get_logger
from src.core.types import QuotaKind

log = get_logger(__name__)


@dataclass(frozen=True)
class QuotaSpec:
    """Where a quota kind's limit and counter live, and how often it resets."""

    limit_field: str
    counter: str
    period: str


QUOTA_SPECS: dict[QuotaKind, QuotaSpec] = {
    QuotaKind.LEADS: QuotaSpec("leads_per_month", "leads_generated", PERIOD_MONTHLY),
    QuotaKind.B2B_SEARCHES: QuotaSpec("b2b_searches_per_day", "b2b_searches_today", PERIOD_DAILY),
    QuotaKind.INTENT_SEARCHES: QuotaSpec("intent_searches_per_day", "intent_searches_today", PERIOD_DAILY),
    QuotaKind.EMAILS: QuotaSpec("emails_per_day", "emails_sent_today", PERIOD_DAILY),
    QuotaKind.WHATSAPP: QuotaSpec("whatsapp_per_day", "whatsapp_sent_today", PERIOD_DAILY),
    QuotaKind.CALLS: QuotaSpec("calls_per_day", "calls_today", PERIOD_DAILY),
    QuotaKind.VOICE_MINUTES: QuotaSpec("voice_minutes", "voice_minutes_used", PERIOD_MONTHLY),
}


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def month_bounds(day: date) -> tuple[date, date]:
    """First and last calendar day of ``day``'s month."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def days_remaining_in_month(day: date) -> int:
    """Days left in the billing month, counting ``day`` itself."""
    _, end = month_bounds(day)
    return (end - day).days + 1


def period_key(period: str, day: date) -> str:
    if period == PERIOD_MONTHLY:
        return day.strftime("%Y-%m")
    return day.isoformat()


def resolve_kind(kind: QuotaKind | str) -> QuotaKind:
    if isinstance(kind, QuotaKind):
        return kind
    try:
        return QuotaKind(kind)
    except ValueError:
        msg = f"unknown quota kind: {kind!r}"
        raise UnknownQuotaKindError(msg, {"kind": kind}) from None


@dataclass
class UsageCounters:
    """Per-tenant counters for the current month and day."""

    tenant_id: str
    month_start: date
    day: date
    leads_generated: int = 0
    b2b_searches_today: int = 0
    intent_searches_today: int = 0
    emails_sent_today: int = 0
    whatsapp_sent_today: int = 0
    calls_today: int = 0
    voice_minutes_used: int = 0
    days_remaining: int = 0
    degraded: bool = False

    def __post_init__(self) -> None:
        for name in COUNTER_FIELDS:
            value = getattr(self, name)
            if value < 0:
                log.warning("usage_counter_clamped", tenant_id=self.tenant_id, counter=name, value=value)
                setattr(self, name, 0)
        if self.days_remaining <= 0:
            self.days_remaining = days_remaining_in_month(self.day)

    @classmethod
    def empty(cls, tenant_id: str, day: date, degraded: bool = False) -> UsageCounters:
        start, _ = month_bounds(day)
        return cls(tenant_id=tenant_id, month_start=start, day=day, degraded=degraded)

    def used(self, kind: QuotaKind | str) -> int:
        return int(getattr(self, QUOTA_SPECS[resolve_kind(kind)].counter))


COUNTER_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(UsageCounters)
    if f.name not in ("tenant_id", "month_start", "day", "days_remaining", "degraded")
)


# ── Pure quota queries ───────────────────────────────────────────

def limit_for(limits: TierLimits, kind: QuotaKind | str) -> int:
    return int(getattr(limits, QUOTA_SPECS[resolve_kind(kind)].limit_field))


def has_reached_limit(limits: TierLimits, counters: UsageCounters, kind: QuotaKind | str) -> bool:
    """A non-positive limit is unlimited and can never be reached."""
    limit = limit_for(limits, kind)
    if limit <= 0:
        return False
    return counters.used(kind) >= limit


def get_remaining_credits(limits: TierLimits, counters: UsageCounters, kind: QuotaKind | str) -> int:
    return max(0, limit_for(limits, kind) - counters.used(kind))


def get_usage_percentage(limits: TierLimits, counters: UsageCounters, kind: QuotaKind | str) -> float:
    limit = limit_for(limits, kind)
    if limit <= 0:
        return 0.0
    return min(MAX_USAGE_PERCENT, counters.used(kind) / limit * 100)


def is_near_limit(limits: TierLimits, counters: UsageCounters, kind: QuotaKind | str) -> bool:
    """At or above the warning threshold but not yet blocked."""
    if has_reached_limit(limits, counters, kind):
        return False
    return get_usage_percentage(limits, counters, kind) >= NEAR_LIMIT_PERCENT


# ── Meter ────────────────────────────────────────────────────────

class UsageMeter:
    """Reads and increments one tenant's counters against its entitlement."""

    def __init__(
        self,
        store: UsageStore,
        tenant_id: str,
        entitlement: TenantEntitlement,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self._store = store
        self._tenant_id = tenant_id
        self._entitlement = entitlement
        self._today = today
        self._counters = UsageCounters.empty(tenant_id, today())
        self._generation = 0

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def entitlement(self) -> TenantEntitlement:
        return self._entitlement

    @property
    def counters(self) -> UsageCounters:
        return self._counters

    def update_entitlement(self, entitlement: TenantEntitlement) -> None:
        self._entitlement = entitlement

    async def refresh(self) -> UsageCounters:
        """Re-read the current period's counters; never raises on store failure."""
        self._generation += 1
        generation = self._generation
        day = self._today()
        keys = {
            spec.counter: period_key(spec.period, day)
            for spec in QUOTA_SPECS.values()
        }

        try:
            raw = await self._store.fetch_counters(self._tenant_id, keys)
        except Exception as exc:
            log.error(
                "usage_fetch_failed",
                tenant_id=self._tenant_id,
                error=str(exc),
                fallback="zero_usage",
            )
            counters = UsageCounters.empty(self._tenant_id, day, degraded=True)
        else:
            start, _ = month_bounds(day)
            counters = UsageCounters(
                tenant_id=self._tenant_id,
                month_start=start,
                day=day,
                **{name: _as_count(raw.get(name)) for name in COUNTER_FIELDS},
            )

        if generation != self._generation:
            log.debug("usage_refresh_superseded", tenant_id=self._tenant_id)
            return self._counters

        self._counters = counters
        return counters

    async def record(self, kind: QuotaKind | str, quantity: int = 1) -> bool:
        """Count consumption of a metered action, then refresh.

        Callers check ``has_reached_limit`` before acting; recording never
        blocks. Returns False when the increment could not be stored.
        """
        spec = QUOTA_SPECS[resolve_kind(kind)]
        if quantity <= 0:
            return True
        key = period_key(spec.period, self._today())

        try:
            await self._store.increment(self._tenant_id, spec.counter, key, quantity)
        except Exception as exc:
            log.error(
                "usage_increment_failed",
                tenant_id=self._tenant_id,
                counter=spec.counter,
                quantity=quantity,
                error=str(exc),
            )
            return False

        log.debug("usage_recorded", tenant_id=self._tenant_id, counter=spec.counter, quantity=quantity)
        await self.refresh()
        return True

    # ── Queries against the last refreshed counters ──────────────

    def has_reached_limit(self, kind: QuotaKind | str) -> bool:
        if self._entitlement.degraded:
            resolve_kind(kind)
            return False
        return has_reached_limit(self._entitlement.limits, self._counters, kind)

    def get_remaining_credits(self, kind: QuotaKind | str) -> int:
        return get_remaining_credits(self._entitlement.limits, self._counters, kind)

    def get_usage_percentage(self, kind: QuotaKind | str) -> float:
        return get_usage_percentage(self._entitlement.limits, self._counters, kind)


def _as_count(raw: object) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0
