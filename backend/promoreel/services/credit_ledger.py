"""Credit ledger - pure credit arithmetic over a user's two pools

Nothing in this module touches the database. Functions take any object
exposing the pool fields of ``User`` (the ORM row itself in production) and
return values or plans that ``credit_service`` persists.
"""
import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from promoreel.core.config import settings
from promoreel.core.exceptions import InsufficientCreditsError

PRIMARY_POOL = "ugc"
SECONDARY_POOL = "veo"
POOLS = (PRIMARY_POOL, SECONDARY_POOL)


@dataclass(frozen=True)
class PoolFields:
    """Attribute names holding one pool on the account"""
    allowed: str
    used: str
    carryover: str
    carryover_expiry: str


_POOL_FIELDS = {
    PRIMARY_POOL: PoolFields("credits_allowed", "credits_used", "carryover", "carryover_expiry"),
    SECONDARY_POOL: PoolFields("credits_allowed_veo", "credits_used_veo", "carryover_veo", "carryover_expiry_veo"),
}

# Monthly allowance per plan tier
PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"credits": 0, "veo_credits": 0},
    "starter": {"credits": 40, "veo_credits": 20},
    "professional": {"credits": 120, "veo_credits": 60},
    "business": {"credits": 240, "veo_credits": 120},
    "scale": {"credits": 480, "veo_credits": 240},
}


@dataclass(frozen=True)
class PoolBalance:
    allowed: int
    used: int
    carryover: int
    carryover_expiry: Optional[datetime]


@dataclass(frozen=True)
class AvailableCredits:
    available: int
    has_carryover: bool


@dataclass(frozen=True)
class ChargePlan:
    """Field deltas for one charge

    ``used_delta`` includes any overuse beyond base and carryover.
    """
    used_delta: int
    carryover_delta: int
    from_base: int
    from_carryover: int
    overuse: int


@dataclass(frozen=True)
class PeriodRollover:
    used: int
    carryover: int
    carryover_expiry: Optional[datetime]


@dataclass(frozen=True)
class CarryoverResult:
    amount: int
    expiry: Optional[datetime]


def pool_fields(pool: str) -> PoolFields:
    try:
        return _POOL_FIELDS[pool]
    except KeyError:
        raise ValueError(f"Unknown credit pool: {pool}")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def read_pool(account: Any, pool: str) -> PoolBalance:
    """Snapshot one pool of an account, treating nulls as zero"""
    fields = pool_fields(pool)
    return PoolBalance(
        allowed=getattr(account, fields.allowed, 0) or 0,
        used=getattr(account, fields.used, 0) or 0,
        carryover=getattr(account, fields.carryover, 0) or 0,
        carryover_expiry=_as_utc(getattr(account, fields.carryover_expiry, None)),
    )


def carryover_is_live(balance: PoolBalance, now: Optional[datetime] = None) -> bool:
    """Carryover counts only strictly before its expiry; no expiry means it never counts"""
    if balance.carryover_expiry is None:
        return False
    return _now(now) < balance.carryover_expiry


def available_credits(account: Any, pool: str, now: Optional[datetime] = None) -> AvailableCredits:
    """Credits the account can still spend from a pool

    available = max(0, allowed - used) + carryover while it has not expired.
    ``used`` is allowed to exceed ``allowed``; the base part never goes negative.
    """
    balance = read_pool(account, pool)
    base = max(0, balance.allowed - balance.used)
    live_carryover = balance.carryover if carryover_is_live(balance, now) else 0
    live_carryover = max(0, live_carryover)
    return AvailableCredits(available=base + live_carryover, has_carryover=live_carryover > 0)


def ensure_can_admit(account: Any, pool: str, cost: int, now: Optional[datetime] = None) -> AvailableCredits:
    """Admission gate for a new job

    Raises:
        InsufficientCreditsError: when nothing is available or less than ``cost``
    """
    credits = available_credits(account, pool, now)
    if credits.available == 0 or credits.available < cost:
        raise InsufficientCreditsError(pool=pool, required=cost, available=credits.available)
    return credits


def can_purchase_plan(
    account: Any,
    pool: str = PRIMARY_POOL,
    threshold: Optional[int] = None,
    now: Optional[datetime] = None
) -> bool:
    """Upsell gate: a new plan may only be bought once availability is at or below the threshold"""
    if threshold is None:
        threshold = settings.UPSELL_CREDIT_THRESHOLD
    return available_credits(account, pool, now).available <= threshold


def credits_for_duration(seconds: int, seconds_per_unit: Optional[int] = None) -> int:
    """One credit per started unit of video length, at least one"""
    if seconds_per_unit is None:
        seconds_per_unit = settings.CREDIT_SECONDS_PER_UNIT
    return max(1, math.ceil(seconds / seconds_per_unit))


def plan_charge(account: Any, pool: str, amount: int, now: Optional[datetime] = None) -> ChargePlan:
    """Split a charge between base allowance, live carryover and overuse

    Base allowance is consumed first. Only the part exceeding the remaining
    base comes out of live carryover. Whatever is left is still added to
    ``used``: charges are recorded at completion and never refused.
    """
    if amount < 0:
        raise ValueError("Charge amount cannot be negative")

    balance = read_pool(account, pool)
    base_remaining = max(0, balance.allowed - balance.used)
    from_base = min(amount, base_remaining)

    carryover_remaining = max(0, balance.carryover) if carryover_is_live(balance, now) else 0
    from_carryover = min(amount - from_base, carryover_remaining)

    overuse = amount - from_base - from_carryover
    return ChargePlan(
        used_delta=from_base + overuse,
        carryover_delta=-from_carryover,
        from_base=from_base,
        from_carryover=from_carryover,
        overuse=overuse,
    )


def next_reset_date(current: datetime, reset_day: int) -> datetime:
    """Midnight UTC on ``reset_day`` of the month after ``current``

    A reset day past the end of that month is clamped to its last day.
    """
    current = _as_utc(current).astimezone(timezone.utc)
    year = current.year + (1 if current.month == 12 else 0)
    month = 1 if current.month == 12 else current.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(reset_day, last_day), tzinfo=timezone.utc)


def should_reset(account: Any, now: Optional[datetime] = None) -> bool:
    """True once the calendar day of ``next_credit_reset`` has been reached"""
    next_reset = _as_utc(getattr(account, "next_credit_reset", None))
    if next_reset is None:
        return False
    return _now(now).date() >= next_reset.date()


def roll_period(account: Any, pool: str, now: Optional[datetime] = None) -> PeriodRollover:
    """New-period values for one pool: usage cleared, carryover kept only while live"""
    balance = read_pool(account, pool)
    if carryover_is_live(balance, now):
        return PeriodRollover(used=0, carryover=balance.carryover, carryover_expiry=balance.carryover_expiry)
    return PeriodRollover(used=0, carryover=0, carryover_expiry=None)


def calculate_carryover(
    old_allowed: int,
    old_used: int,
    old_next_reset: Optional[datetime],
    existing_carryover: int = 0,
    existing_expiry: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> CarryoverResult:
    """Carryover granted when a user changes plan

    Unused base of the old plan plus still-valid existing carryover. It
    expires at the later of the old period end and the existing expiry.
    """
    now = _now(now)
    old_next_reset = _as_utc(old_next_reset)
    existing_expiry = _as_utc(existing_expiry)

    remaining = max(0, (old_allowed or 0) - (old_used or 0))
    valid_existing = existing_carryover or 0
    if existing_expiry is None or existing_expiry <= now:
        valid_existing = 0

    if existing_expiry and old_next_reset:
        expiry = max(existing_expiry, old_next_reset)
    else:
        expiry = existing_expiry or old_next_reset

    return CarryoverResult(amount=remaining + valid_existing, expiry=expiry)


def plan_limits(plan_tier: Optional[str]) -> Dict[str, int]:
    """Monthly allowance for a tier, unknown tiers get the free allowance"""
    return PLAN_LIMITS.get(plan_tier or "free", PLAN_LIMITS["free"])
