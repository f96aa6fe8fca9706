"""Entitlement service - the persistence boundary around the entitlement engine

Every write is a compare-and-swap on ``Entitlement.version``: the UPDATE only
matches the row if nobody else wrote it since it was read. A lost race re-reads
the record and re-runs the pure transition, so the debit is effectively
"decrement if still authorized" at the store.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ideaverse.core.config import settings
from ideaverse.core.errors import (
    EntitlementPersistError, MalformedPaymentEventError, NoCreditsError, StaleEntitlementError
)
from ideaverse.core.metrics import (
    duplicate_purchases_counter, persist_failures_counter, purchases_applied_counter,
    subscriptions_expired_counter
)
from ideaverse.models.applied_purchase import AppliedPurchase
from ideaverse.models.entitlement import Entitlement
from ideaverse.models.generated_idea import GeneratedIdea
from ideaverse.models.user import User
from ideaverse.schemas.generations import GameIdea
from ideaverse.schemas.payments import PaymentEvent
from ideaverse.services.entitlement_engine import (
    EXPIRING_TIERS, EntitlementRecord, SubscriptionStatus, apply_purchase, can_generate,
    consume_generation, deactivate, effective_tier, expire, is_lapsed, is_unlimited, new_record,
    promote_for_top_up, remaining_credits, to_dict
)
from ideaverse.services.plan_catalog import ONE_SHOT, normalize_plan_type

logger = logging.getLogger(__name__)

RECORD_FIELDS = (
    "subscription_tier", "subscription_status", "has_used_free_generation",
    "generations_remaining", "total_generations", "subscription_start_date",
    "subscription_end_date", "last_generation_date",
)


def _row_to_record(row: Entitlement) -> EntitlementRecord:
    return EntitlementRecord(
        subscription_tier=row.subscription_tier,
        subscription_status=row.subscription_status,
        has_used_free_generation=row.has_used_free_generation,
        generations_remaining=row.generations_remaining,
        total_generations=row.total_generations,
        subscription_start_date=row.subscription_start_date,
        subscription_end_date=row.subscription_end_date,
        last_generation_date=row.last_generation_date,
        version=row.version,
    )


def _record_values(record: EntitlementRecord) -> Dict[str, Any]:
    values = {field: getattr(record, field) for field in RECORD_FIELDS}
    values["subscription_tier"] = record.subscription_tier.value
    values["subscription_status"] = record.subscription_status.value
    return values


def get_or_create_entitlement(user_id: int, db: Session) -> Entitlement:
    """Get or create the entitlement row for a user (first authentication creates it)"""
    row = db.query(Entitlement).filter(Entitlement.user_id == user_id).first()
    if row:
        return row

    initial = new_record()
    row = Entitlement(user_id=user_id, version=0, **_record_values(initial))
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request created it first
        db.rollback()
        return db.query(Entitlement).filter(Entitlement.user_id == user_id).one()
    db.refresh(row)
    logger.info(f"Created entitlement record for user {user_id}")
    return row


def load_record(user_id: int, db: Session) -> Optional[EntitlementRecord]:
    """Read the confirmed record, bypassing any stale copy in the session identity map"""
    row = (
        db.query(Entitlement)
        .populate_existing()
        .filter(Entitlement.user_id == user_id)
        .first()
    )
    return _row_to_record(row) if row else None


def save_record(
    user_id: int,
    record: EntitlementRecord,
    expected_version: int,
    db: Session,
    extra_values: Optional[Dict[str, Any]] = None,
    commit: bool = True
) -> EntitlementRecord:
    """Conditionally write ``record`` if the stored version is still ``expected_version``.

    Returns the record carrying its new version.

    Raises:
        StaleEntitlementError: another writer got there first (nothing written)
    """
    values = _record_values(record)
    values.update(extra_values or {})
    values["version"] = expected_version + 1
    values["updated_at"] = datetime.now(timezone.utc)

    stmt = (
        update(Entitlement)
        .where(Entitlement.user_id == user_id, Entitlement.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        db.rollback()
        raise StaleEntitlementError(user_id, expected_version)
    if commit:
        db.commit()
    return record.model_copy(update={"version": expected_version + 1})


def mutate_record(
    user_id: int,
    transition: Callable[[EntitlementRecord], EntitlementRecord],
    db: Session,
    extra_values: Optional[Dict[str, Any]] = None
) -> EntitlementRecord:
    """Read-transition-CAS loop for simple transitions (unsubscribe, expiry)"""
    get_or_create_entitlement(user_id, db)
    for _ in range(settings.CAS_MAX_RETRIES + 1):
        current = load_record(user_id, db)
        try:
            return save_record(user_id, transition(current), current.version, db, extra_values=extra_values)
        except StaleEntitlementError:
            logger.info(f"Entitlement for user {user_id} changed concurrently, retrying")
    raise EntitlementPersistError(f"Entitlement for user {user_id} kept changing, giving up")


# ============================================================================
# GENERATION DEBIT
# ============================================================================

def commit_generation(
    user_id: int,
    idea: GameIdea,
    prompt: Optional[str],
    db: Session
) -> Tuple[EntitlementRecord, GeneratedIdea]:
    """Debit one generation and bank the idea in a single transaction.

    Authorization is re-checked against the freshly read record, so a credit
    spent by a concurrent tab since the caller's check denies this one.

    Raises:
        NoCreditsError: the record can no longer generate
        EntitlementPersistError: the debit could not be recorded; nothing was applied
    """
    persist_retries = settings.PERSIST_RETRY_ATTEMPTS
    cas_retries = settings.CAS_MAX_RETRIES

    while True:
        try:
            current = load_record(user_id, db)
            if current is None or not can_generate(current):
                raise NoCreditsError()

            updated = consume_generation(current)
            saved = save_record(user_id, updated, current.version, db, commit=False)
            idea_row = GeneratedIdea(
                user_id=user_id,
                title=idea.title,
                description=idea.description,
                category=idea.category,
                genre=idea.genre,
                viability=idea.viability,
                originality=idea.originality,
                market_appeal=idea.market_appeal,
                prompt=prompt,
            )
            db.add(idea_row)
            db.commit()
            db.refresh(idea_row)
            logger.info(
                f"Generation recorded for user {user_id}: total={saved.total_generations}, "
                f"remaining={remaining_credits(saved)}"
            )
            return saved, idea_row

        except StaleEntitlementError:
            if cas_retries <= 0:
                persist_failures_counter.labels(operation="consume").inc()
                raise EntitlementPersistError("Entitlement changed concurrently, please retry")
            cas_retries -= 1
            logger.info(f"Concurrent write on entitlement for user {user_id}, re-checking credits")

        except SQLAlchemyError as e:
            db.rollback()
            persist_failures_counter.labels(operation="consume").inc()
            if persist_retries <= 0:
                logger.error(f"Failed to persist generation debit for user {user_id}: {e}", exc_info=True)
                raise EntitlementPersistError("Could not record generation, please retry") from e
            persist_retries -= 1
            logger.warning(f"Persisting generation debit for user {user_id} failed, retrying: {e}")


# ============================================================================
# PURCHASES
# ============================================================================

def has_applied_purchase(purchase_id: str, db: Session) -> bool:
    return db.query(AppliedPurchase.id).filter(AppliedPurchase.purchase_id == purchase_id).first() is not None


def apply_purchase_event(event: PaymentEvent, db: Session, source: str = "checkout") -> Dict[str, Any]:
    """Apply a payment event exactly once per purchase id.

    The entitlement write and the applied_purchases row commit together, so a
    redelivered event either sees the purchase id and skips, or loses the
    unique-constraint race and skips.

    Returns:
        Dict with 'applied' (False for duplicates) and the confirmed 'record'

    Raises:
        MalformedPaymentEventError / InvalidPurchaseError: permanent, do not retry
        SQLAlchemyError: store unavailable, let the provider redeliver
    """
    plan_key = normalize_plan_type(event.plan_type)

    if has_applied_purchase(event.purchase_id, db):
        duplicate_purchases_counter.labels(source=source).inc()
        logger.info(f"Purchase {event.purchase_id} already applied, skipping")
        return {"applied": False, "record": load_record(event.user_id, db)}

    if not db.query(User.id).filter(User.id == event.user_id).first():
        raise MalformedPaymentEventError(f"Purchase {event.purchase_id} references unknown user {event.user_id}")

    get_or_create_entitlement(event.user_id, db)
    extra = {"stripe_subscription_id": event.subscription_id} if event.subscription_id else None

    for _ in range(settings.CAS_MAX_RETRIES + 1):
        current = load_record(event.user_id, db)
        base = promote_for_top_up(current) if plan_key == ONE_SHOT else current
        updated = apply_purchase(base, plan_key, event.generations_granted)
        try:
            saved = save_record(event.user_id, updated, current.version, db, extra_values=extra, commit=False)
            db.add(AppliedPurchase(
                purchase_id=event.purchase_id,
                user_id=event.user_id,
                plan_type=plan_key,
                generations_granted=updated.generations_remaining - base.generations_remaining
                if plan_key == ONE_SHOT else updated.generations_remaining,
                source=source,
            ))
            db.commit()
        except StaleEntitlementError:
            logger.info(f"Entitlement for user {event.user_id} changed while applying {event.purchase_id}, retrying")
            continue
        except IntegrityError:
            db.rollback()
            duplicate_purchases_counter.labels(source=source).inc()
            logger.info(f"Purchase {event.purchase_id} applied by a concurrent delivery, skipping")
            return {"applied": False, "record": load_record(event.user_id, db)}

        purchases_applied_counter.labels(plan_type=plan_key, source=source).inc()
        logger.info(
            f"Applied {plan_key} purchase {event.purchase_id} for user {event.user_id} ({source}): "
            f"tier={saved.subscription_tier.value}, remaining={saved.generations_remaining}"
        )
        return {"applied": True, "record": saved}

    raise EntitlementPersistError(f"Entitlement for user {event.user_id} kept changing while applying {event.purchase_id}")


# ============================================================================
# SUBSCRIPTION STATE
# ============================================================================

def get_stripe_subscription_id(user_id: int, db: Session) -> Optional[str]:
    row = db.query(Entitlement).filter(Entitlement.user_id == user_id).first()
    return row.stripe_subscription_id if row else None


def deactivate_user(user_id: int, db: Session) -> EntitlementRecord:
    """Unsubscribe transition, persisted; forgets the provider subscription id"""
    record = mutate_record(user_id, deactivate, db, extra_values={"stripe_subscription_id": None})
    logger.info(f"Entitlement for user {user_id} deactivated (remaining balance {record.generations_remaining} preserved)")
    return record


def deactivate_by_subscription_id(subscription_id: str, db: Session) -> Optional[EntitlementRecord]:
    """Deactivate whichever user currently holds this provider subscription"""
    row = db.query(Entitlement).filter(Entitlement.stripe_subscription_id == subscription_id).first()
    if not row:
        logger.info(f"No entitlement holds subscription {subscription_id}, nothing to deactivate")
        return None
    return deactivate_user(row.user_id, db)


def expire_lapsed_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """Move active spark/creator records past end date + grace to expired.

    Returns:
        Number of records expired
    """
    now = now or datetime.now(timezone.utc)
    grace = timedelta(hours=settings.SUBSCRIPTION_GRACE_PERIOD_HOURS)
    candidates: List[Entitlement] = (
        db.query(Entitlement)
        .filter(
            Entitlement.subscription_status == SubscriptionStatus.ACTIVE.value,
            Entitlement.subscription_tier.in_([t.value for t in EXPIRING_TIERS]),
            Entitlement.subscription_end_date.isnot(None),
            Entitlement.subscription_end_date < now - grace,
        )
        .all()
    )

    expired = 0
    for row in candidates:
        current = load_record(row.user_id, db)
        # Re-check on the fresh read; a renewal may have landed
        if not is_lapsed(current, now, grace):
            continue
        try:
            save_record(row.user_id, expire(current), current.version, db)
        except StaleEntitlementError:
            logger.info(f"Entitlement for user {row.user_id} changed during expiry sweep, skipping")
            continue
        expired += 1
        subscriptions_expired_counter.inc()
        logger.info(f"Subscription for user {row.user_id} expired (ended {current.subscription_end_date})")
    return expired


def describe_record(record: EntitlementRecord) -> Dict[str, Any]:
    """Client-facing view of a confirmed record"""
    unlimited = is_unlimited(record)
    return {
        "entitlement": to_dict(record),
        "effective_tier": effective_tier(record).value,
        "remaining_credits": None if unlimited else remaining_credits(record),
        "unlimited": unlimited,
        "can_generate": can_generate(record),
        "version": record.version,
    }


def get_entitlement_status(user_id: int, db: Session) -> Dict[str, Any]:
    get_or_create_entitlement(user_id, db)
    return describe_record(load_record(user_id, db))
