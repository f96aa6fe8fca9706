"""Entitlement engine - quota rules as pure transitions on an entitlement record

Nothing in this module touches the database, Redis or Stripe. Callers load a
record, run one of these functions, and persist the returned copy through
``entitlement_service``. Records are immutable; every transition returns a new
record and leaves its input untouched.
"""
import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ideaverse.core.errors import InvalidPurchaseError
from ideaverse.services.plan_catalog import UNLIMITED, get_plan_generations, normalize_plan_type


class SubscriptionTier(str, Enum):
    FREE = "free"
    ONE_SHOT = "one_shot"
    SPARK = "spark"
    CREATOR = "creator"
    UNIVERSE = "universe"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


# Tiers whose quota is a finite bucket stored in generations_remaining
BUCKET_TIERS = frozenset({SubscriptionTier.ONE_SHOT, SubscriptionTier.SPARK, SubscriptionTier.CREATOR})

# Recurring tiers that carry an end date and can lapse
EXPIRING_TIERS = frozenset({SubscriptionTier.SPARK, SubscriptionTier.CREATOR})


class EntitlementRecord(BaseModel):
    """One user's quota state.

    Accepts both snake_case and the camelCase keys used by the web client.
    ``version`` is owned by the persistence layer and is never changed here.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    has_used_free_generation: bool = False
    generations_remaining: int = Field(default=1, ge=0)
    total_generations: int = Field(default=0, ge=0)
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    last_generation_date: Optional[datetime] = None
    version: int = Field(default=0, ge=0)

    @field_validator("subscription_tier", mode="before")
    @classmethod
    def _accept_wire_tier(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace("-", "_")
        return v

    @field_validator("subscription_start_date", "subscription_end_date", "last_generation_date")
    @classmethod
    def _assume_utc(cls, v):
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Same wall-clock time ``months`` later, clamping to the last day of short months"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def new_record() -> EntitlementRecord:
    """Record created on a user's first authentication"""
    return EntitlementRecord()


def effective_tier(record: EntitlementRecord) -> SubscriptionTier:
    """Tier whose quota rules currently apply; anything not active behaves as free"""
    if record.is_active:
        return record.subscription_tier
    return SubscriptionTier.FREE


def remaining_credits(record: EntitlementRecord) -> int:
    """Generations the record may still consume, or UNLIMITED.

    First match wins:
      1. status not active -> free-tier rule, whatever the stored tier
      2. universe + active -> UNLIMITED
      3. one_shot/spark/creator + active -> generations_remaining
      4. otherwise -> 1 until the lifetime free generation is used, then 0
    """
    if record.is_active:
        if record.subscription_tier == SubscriptionTier.UNIVERSE:
            return UNLIMITED
        if record.subscription_tier in BUCKET_TIERS:
            return max(0, record.generations_remaining)
    return 0 if record.has_used_free_generation else 1


def is_unlimited(record: EntitlementRecord) -> bool:
    return record.is_active and record.subscription_tier == SubscriptionTier.UNIVERSE


def can_generate(record: EntitlementRecord) -> bool:
    return remaining_credits(record) > 0


def consume_generation(record: EntitlementRecord, now: Optional[datetime] = None) -> EntitlementRecord:
    """Record one successful generation.

    Does not re-check authorization; callers check ``can_generate`` first.
    Only one_shot buckets are metered here. Spark and creator allotments are
    replenished by renewals and universe is unlimited, so their
    generations_remaining is left alone.
    """
    updates: Dict[str, Any] = {
        "total_generations": record.total_generations + 1,
        "last_generation_date": _now(now),
    }
    if effective_tier(record) == SubscriptionTier.FREE:
        # Covers lapsed records too: the free credit is what authorized them
        updates["has_used_free_generation"] = True
    if record.subscription_tier == SubscriptionTier.ONE_SHOT:
        updates["generations_remaining"] = max(0, record.generations_remaining - 1)
    return record.model_copy(update=updates)


def _validate_grant(plan_key: str, generations_granted: Optional[int]) -> int:
    if generations_granted is None:
        return get_plan_generations(plan_key)
    if isinstance(generations_granted, bool) or not isinstance(generations_granted, int):
        raise InvalidPurchaseError(f"Generations granted must be an integer, got {generations_granted!r}")
    if generations_granted < 0:
        raise InvalidPurchaseError(f"Generations granted cannot be negative: {generations_granted}")
    return generations_granted


def apply_purchase(
    record: EntitlementRecord,
    plan_type: str,
    generations_granted: Optional[int] = None,
    now: Optional[datetime] = None
) -> EntitlementRecord:
    """Apply a completed purchase.

    one_shot is a top-up: the grant is added to generations_remaining and the
    tier/status are left as they are. Recurring plans replace the allotment
    (not additive), activate the plan and restart the period; spark and
    creator end one calendar month later, universe has no end date.
    total_generations is never touched, it counts consumption only.

    This function is not idempotent on its own; ``entitlement_service``
    guards it with the purchase id.

    Raises:
        InvalidPurchaseError: unknown plan or invalid grant
    """
    plan_key = normalize_plan_type(plan_type)
    granted = _validate_grant(plan_key, generations_granted)
    moment = _now(now)

    if plan_key == SubscriptionTier.ONE_SHOT.value:
        return record.model_copy(update={
            "generations_remaining": record.generations_remaining + granted,
        })

    tier = SubscriptionTier(plan_key)
    return record.model_copy(update={
        "subscription_tier": tier,
        "subscription_status": SubscriptionStatus.ACTIVE,
        "subscription_start_date": moment,
        "subscription_end_date": add_months(moment, 1) if tier in EXPIRING_TIERS else None,
        "generations_remaining": granted,
    })


def carried_balance(record: EntitlementRecord) -> int:
    """Paid balance a record keeps while it has no active plan.

    Only records that were ever on a paid plan (they carry a start date) have
    one; a never-paid record's generations_remaining is the initial
    placeholder, and the universe sentinel is not a balance.
    """
    if record.subscription_start_date is None:
        return 0
    if record.generations_remaining >= UNLIMITED:
        return 0
    return record.generations_remaining


def promote_for_top_up(record: EntitlementRecord, now: Optional[datetime] = None) -> EntitlementRecord:
    """Prepare a record with no active plan to receive a one-shot top-up.

    A top-up only counts under an active bucket tier, so a free, unsubscribed
    or expired record is moved to one_shot/active first. The balance it kept
    since its last plan stays in the bucket and the unused free credit, if
    any, is folded in on top. Records on an active plan are returned
    unchanged.
    """
    if record.is_active and record.subscription_tier != SubscriptionTier.FREE:
        return record
    free_credit = 0 if record.has_used_free_generation else 1
    return record.model_copy(update={
        "subscription_tier": SubscriptionTier.ONE_SHOT,
        "subscription_status": SubscriptionStatus.ACTIVE,
        "generations_remaining": carried_balance(record) + free_credit,
        "has_used_free_generation": True,
        "subscription_start_date": record.subscription_start_date or _now(now),
        "subscription_end_date": None,
    })


def deactivate(record: EntitlementRecord) -> EntitlementRecord:
    """Unsubscribe: back to free/inactive, balances preserved"""
    return record.model_copy(update={
        "subscription_tier": SubscriptionTier.FREE,
        "subscription_status": SubscriptionStatus.INACTIVE,
    })


def expire(record: EntitlementRecord) -> EntitlementRecord:
    """Mark a lapsed recurring subscription as expired; quota reverts to the free rule"""
    return record.model_copy(update={"subscription_status": SubscriptionStatus.EXPIRED})


def is_lapsed(record: EntitlementRecord, now: Optional[datetime] = None, grace: timedelta = timedelta(0)) -> bool:
    """Active spark/creator record whose period ended more than ``grace`` ago"""
    if not record.is_active or record.subscription_tier not in EXPIRING_TIERS:
        return False
    if record.subscription_end_date is None:
        return False
    return record.subscription_end_date + grace < _now(now)


def to_dict(record: EntitlementRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")
