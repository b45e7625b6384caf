"""System-wide shared types: the ordered role, tier and plan vocabularies."""

from __future__ import annotations

from enum import Enum
from typing import Any, TypeVar

_E = TypeVar("_E", bound="OrderedStrEnum")


class OrderedStrEnum(str, Enum):
    """String enum whose members are totally ordered by definition position.

    Comparisons only hold between members of the same enum; comparing a
    member with a plain string raises ``TypeError`` rather than falling back
    to lexical order.
    """

    @property
    def rank(self) -> int:
        return _rank_of(self)

    @classmethod
    def parse(cls: type[_E], value: Any) -> _E | None:
        """Return the member for ``value`` (case-insensitive) or None."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def __lt__(self, other: object) -> bool:
        return self.rank < _same_type(self, other).rank

    def __le__(self, other: object) -> bool:
        return self.rank <= _same_type(self, other).rank

    def __gt__(self, other: object) -> bool:
        return self.rank > _same_type(self, other).rank

    def __ge__(self, other: object) -> bool:
        return self.rank >= _same_type(self, other).rank


def _rank_of(member: OrderedStrEnum) -> int:
    return list(type(member)).index(member)


def _same_type(member: OrderedStrEnum, other: object) -> OrderedStrEnum:
    if type(other) is not type(member):
        msg = f"cannot order {type(member).__name__} against {type(other).__name__}"
        raise TypeError(msg)
    return other  # type: ignore[return-value]


# ── Enums ────────────────────────────────────────────────────────

class Role(OrderedStrEnum):
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"
    MASTER_ADMIN = "master_admin"


class SubscriptionTier(OrderedStrEnum):
    """Quota/feature-flag tiers backing ``TierLimits``."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class SubscriptionPlan(OrderedStrEnum):
    """Plan vocabulary backing the ``FeatureAccessMap`` model."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class QuotaKind(str, Enum):
    LEADS = "leads"
    B2B_SEARCHES = "b2b_searches"
    INTENT_SEARCHES = "intent_searches"
    EMAILS = "emails"
    WHATSAPP = "whatsapp"
    CALLS = "calls"
    VOICE_MINUTES = "voice_minutes"


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
