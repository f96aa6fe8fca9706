"""Subscription service - plans, checkout, webhooks and unsubscribe"""
import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from ideaverse.core.config import settings
from ideaverse.core.errors import AccountNotFoundError, InvalidPurchaseError, MalformedPaymentEventError
from ideaverse.core.logging import billing_logger
from ideaverse.core.metrics import webhook_events_counter
from ideaverse.models.user import User
from ideaverse.services.entitlement_service import (
    apply_purchase_event, deactivate_by_subscription_id, deactivate_user, describe_record,
    get_entitlement_status, get_stripe_subscription_id, has_applied_purchase
)
from ideaverse.services.plan_catalog import PLANS, UNLIMITED, format_price, is_recurring
from ideaverse.services.stripe_service import (
    cancel_stripe_subscription, checkout_session_is_paid, construct_webhook_event, create_checkout_session,
    get_stripe_value, log_stripe_event, mark_stripe_event_processed, payment_event_from_checkout,
    payment_event_from_renewal, record_stripe_customer, retrieve_checkout_session
)

logger = logging.getLogger(__name__)


# ============================================================================
# PLANS & CHECKOUT
# ============================================================================

def list_available_plans() -> Dict:
    """List purchasable plans with price formatting

    Returns:
        Dict with 'plans' list
    """
    plans_list = []
    for plan_key, plan in PLANS.items():
        unlimited = plan["generations"] >= UNLIMITED
        plans_list.append({
            "key": plan_key,
            "name": plan["name"],
            "description": plan["description"],
            "generations": None if unlimited else plan["generations"],
            "unlimited": unlimited,
            "recurring": is_recurring(plan_key),
            "interval": plan["interval"],
            "price": {
                "amount": plan["price_cents"],
                "amount_dollars": plan["price_cents"] / 100,
                "currency": "USD",
                "formatted": format_price(plan["price_cents"]),
            },
        })
    return {"plans": plans_list}


def create_subscription_checkout(user_id: int, plan_key: str, frontend_url: str, db: Session) -> Dict[str, Any]:
    """Create a Stripe checkout session for any catalog plan

    Raises:
        ValueError: invalid plan, unknown user or Stripe not configured
    """
    success_url = f"{frontend_url}/?payment=success&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{frontend_url}/?payment=cancelled"
    session = create_checkout_session(user_id, plan_key, success_url, cancel_url, db)
    return {"session_id": session["id"], "url": session["url"]}


def check_checkout_status(session_id: str, user_id: int, db: Session) -> Dict[str, Any]:
    """Reconcile a checkout after the redirect back from Stripe.

    The webhook normally lands first. If it has not, the session is fetched
    from Stripe and applied through the same idempotent path, so whichever
    arrives second is a no-op.

    Raises:
        ValueError: Stripe not configured or the session belongs to someone else
    """
    if has_applied_purchase(session_id, db):
        return {"status": "applied", **get_entitlement_status(user_id, db)}

    if not settings.STRIPE_SECRET_KEY:
        raise ValueError("Stripe not configured")

    session = retrieve_checkout_session(session_id)
    event = payment_event_from_checkout(session)
    if event.user_id != user_id:
        raise ValueError("Checkout session does not belong to current user")

    if not checkout_session_is_paid(session):
        return {
            "status": "pending",
            "payment_status": get_stripe_value(session, "payment_status"),
            "retry_after_seconds": settings.ENTITLEMENT_REFRESH_DELAY_SECONDS,
            **get_entitlement_status(user_id, db),
        }

    previous_subscription_id = get_stripe_subscription_id(user_id, db)
    result = apply_purchase_event(event, db, source="reconcile")
    if result["applied"]:
        record_stripe_customer(user_id, get_stripe_value(session, "customer"), db)
        _cancel_replaced_subscription(previous_subscription_id, event.subscription_id)
    return {"status": "applied", **describe_record(result["record"])}


def _cancel_replaced_subscription(previous_id, new_id) -> None:
    """Switching plans opens a new Stripe subscription; stop billing the old one"""
    if previous_id and new_id and previous_id != new_id:
        billing_logger.info(f"Subscription {previous_id} replaced by {new_id}, canceling the old one")
        cancel_stripe_subscription(previous_id)


def unsubscribe(user_id: int, db: Session) -> Dict[str, Any]:
    """Cancel the user's plan: free/inactive, balances preserved

    Raises:
        AccountNotFoundError: user no longer exists
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"Unsubscribe request for deleted user {user_id}")
        raise AccountNotFoundError(user_id)

    subscription_id = get_stripe_subscription_id(user_id, db)
    if subscription_id:
        # Continue on failure; the local record is what gates generation
        cancel_stripe_subscription(subscription_id)

    record = deactivate_user(user_id, db)
    billing_logger.info(f"User {user_id} unsubscribed")
    return {"status": "success", **describe_record(record)}


# ============================================================================
# WEBHOOK
# ============================================================================

def handle_checkout_completed(session: Any, db: Session) -> str:
    if not checkout_session_is_paid(session):
        # Async payment methods complete later via checkout.session.async_payment_succeeded
        logger.info(f"Checkout session {get_stripe_value(session, 'id')} completed but not paid yet")
        return "unpaid"

    event = payment_event_from_checkout(session)
    previous_subscription_id = get_stripe_subscription_id(event.user_id, db)
    result = apply_purchase_event(event, db, source="checkout")
    if not result["applied"]:
        return "duplicate"
    record_stripe_customer(event.user_id, get_stripe_value(session, "customer"), db)
    _cancel_replaced_subscription(previous_subscription_id, event.subscription_id)
    return "applied"


def handle_invoice_payment_succeeded(invoice: Any, db: Session) -> str:
    event = payment_event_from_renewal(invoice, db)
    if event is None:
        return "ignored"
    result = apply_purchase_event(event, db, source="renewal")
    return "applied" if result["applied"] else "duplicate"


def handle_subscription_deleted(subscription: Any, db: Session) -> str:
    subscription_id = get_stripe_value(subscription, "id")
    if not subscription_id:
        raise MalformedPaymentEventError("Subscription deletion has no subscription id")
    record = deactivate_by_subscription_id(subscription_id, db)
    return "deactivated" if record else "ignored"


def handle_invoice_payment_failed(invoice: Any, db: Session) -> str:
    invoice_id = get_stripe_value(invoice, "id", "unknown")
    billing_logger.warning(f"Payment failed for invoice {invoice_id}")
    return "logged"


EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "checkout.session.async_payment_succeeded": handle_checkout_completed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Process Stripe webhook event

    Validates the signature, logs the event for idempotency and dispatches by
    type. Malformed payment metadata can never succeed on redelivery, so it is
    logged, marked processed and acknowledged. Any other failure propagates
    without marking the event processed, so Stripe redelivers it.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session

    Returns:
        Dict with status information

    Raises:
        ValueError: For invalid payload or missing webhook secret
        stripe.error.SignatureVerificationError: For invalid signature
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ValueError("Webhook secret not configured")

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError("Invalid payload")

    event_id = event["id"]
    event_type = event["type"]
    stripe_event = log_stripe_event(event_id, event_type, event, db)

    if stripe_event.processed:
        logger.info(f"Webhook event {event_id} already processed")
        webhook_events_counter.labels(event_type=event_type, outcome="already_processed").inc()
        return {"status": "already_processed"}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        mark_stripe_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, outcome="ignored").inc()
        return {"status": "ignored"}

    data = event["data"]["object"]
    try:
        outcome = handler(data, db)
    except (MalformedPaymentEventError, InvalidPurchaseError) as e:
        billing_logger.error(f"Dropping webhook event {event_id} ({event_type}) with malformed data: {e}")
        mark_stripe_event_processed(event_id, db, error_message=str(e))
        webhook_events_counter.labels(event_type=event_type, outcome="malformed").inc()
        return {"status": "error_logged", "error": str(e)}
    except Exception:
        db.rollback()
        webhook_events_counter.labels(event_type=event_type, outcome="failed").inc()
        raise

    mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()
    logger.info(f"Processed webhook event {event_id} of type {event_type}: {outcome}")
    return {"status": "success", "outcome": outcome}
