"""Stripe service - checkout sessions, event log and payment event parsing"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from ideaverse.core.config import settings
from ideaverse.core.errors import MalformedPaymentEventError
from ideaverse.core.logging import billing_logger
from ideaverse.models.entitlement import Entitlement
from ideaverse.models.stripe_event import StripeEvent
from ideaverse.models.user import User
from ideaverse.schemas.payments import PaymentEvent
from ideaverse.services.plan_catalog import (
    get_plan, is_recurring, normalize_plan_type, to_wire_plan_type
)

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

PAID_STATUSES = ("paid", "no_payment_required")
RENEWAL_BILLING_REASON = "subscription_cycle"


# ============================================================================
# CHECKOUT
# ============================================================================

def _build_line_item(plan_key: str) -> Dict[str, Any]:
    """Inline price_data for a catalog plan; no Stripe-side price objects needed"""
    plan = get_plan(plan_key)
    price_data: Dict[str, Any] = {
        "currency": "usd",
        "product_data": {"name": plan["name"], "description": plan["description"]},
        "unit_amount": plan["price_cents"],
    }
    if plan["interval"]:
        price_data["recurring"] = {"interval": plan["interval"]}
    return {"price_data": price_data, "quantity": 1}


def create_checkout_session(user_id: int, plan_type: str, success_url: str, cancel_url: str, db: Session) -> Dict:
    """Create a Stripe Checkout session for a catalog plan.

    one_shot is a one-time payment; recurring plans open a monthly
    subscription whose metadata lets renewals be attributed to the user.

    Raises:
        ValueError: user not found, Stripe not configured, or unknown plan
    """
    if not settings.STRIPE_SECRET_KEY:
        raise ValueError("Stripe not configured")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise ValueError("User not found")

    plan_key = normalize_plan_type(plan_type)
    plan = get_plan(plan_key)
    metadata = {
        "userId": str(user_id),
        "planType": to_wire_plan_type(plan_key),
        "generations": str(plan["generations"]),
    }

    checkout_params: Dict[str, Any] = {
        "payment_method_types": ["card"],
        "line_items": [_build_line_item(plan_key)],
        "mode": "subscription" if is_recurring(plan_key) else "payment",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": str(user_id),
        "metadata": metadata,
    }
    if is_recurring(plan_key):
        checkout_params["subscription_data"] = {
            "metadata": {"userId": str(user_id), "planType": to_wire_plan_type(plan_key)}
        }

    if user.stripe_customer_id:
        checkout_params["customer"] = user.stripe_customer_id
    else:
        checkout_params["customer_email"] = user.email

    session = stripe.checkout.Session.create(**checkout_params)
    billing_logger.info(f"Checkout session {session.id} created for user {user_id} ({plan_key})")
    return {"id": session.id, "url": session.url}


def construct_webhook_event(payload: bytes, sig_header: str) -> Any:
    """Verify the Stripe signature and parse the event

    Raises:
        ValueError: payload is not valid JSON
        stripe.error.SignatureVerificationError: signature does not match
    """
    return stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)


def retrieve_checkout_session(session_id: str) -> Any:
    return stripe.checkout.Session.retrieve(session_id)


def cancel_stripe_subscription(subscription_id: str) -> bool:
    """Cancel a subscription at Stripe immediately. Returns False on Stripe errors."""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("Stripe not configured, skipping subscription cancellation")
        return False
    try:
        stripe.Subscription.cancel(subscription_id)
        billing_logger.info(f"Canceled Stripe subscription {subscription_id}")
        return True
    except stripe.error.StripeError as e:
        logger.warning(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
        return False


# ============================================================================
# WEBHOOK & EVENT LOGGING
# ============================================================================

def _event_payload(event: Any) -> Dict:
    if isinstance(event, dict):
        return event
    return json.loads(str(event))


def log_stripe_event(event_id: str, event_type: str, payload: Any, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=_event_payload(payload),
            processed=False
        )
        db.add(stripe_event)
        db.commit()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = error_message
        db.commit()


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _metadata_value(metadata: Any, *keys: str) -> Optional[str]:
    for key in keys:
        value = get_stripe_value(metadata, key)
        if value not in (None, ""):
            return str(value)
    return None


def _parse_user_id(raw: Optional[str], source_id: str) -> int:
    if raw is None:
        raise MalformedPaymentEventError(f"{source_id} has no user id in metadata")
    try:
        return int(raw)
    except ValueError:
        raise MalformedPaymentEventError(f"{source_id} has a non-numeric user id: {raw!r}")


def _parse_generations(raw: Optional[str], source_id: str) -> Optional[int]:
    """Explicit grant from metadata, or None to use the catalog allotment"""
    if raw is None:
        return None
    try:
        granted = int(raw)
    except ValueError:
        raise MalformedPaymentEventError(f"{source_id} has a non-numeric generation grant: {raw!r}")
    return granted


# ============================================================================
# PAYMENT EVENT PARSING
# ============================================================================

def checkout_session_is_paid(session: Any) -> bool:
    return get_stripe_value(session, "payment_status") in PAID_STATUSES


def payment_event_from_checkout(session: Any) -> PaymentEvent:
    """Build the payment event for a completed checkout session (purchase id = session id).

    Raises:
        MalformedPaymentEventError: metadata is missing or unusable
        InvalidPurchaseError: plan type is not in the catalog
    """
    session_id = get_stripe_value(session, "id")
    if not session_id:
        raise MalformedPaymentEventError("Checkout session has no id")

    metadata = get_stripe_value(session, "metadata", {})
    raw_user_id = _metadata_value(metadata, "userId", "user_id") or get_stripe_value(session, "client_reference_id")
    user_id = _parse_user_id(raw_user_id, f"Checkout session {session_id}")

    raw_plan = _metadata_value(metadata, "planType", "plan_type")
    if raw_plan is None:
        raise MalformedPaymentEventError(f"Checkout session {session_id} has no plan type in metadata")
    plan_key = normalize_plan_type(raw_plan)

    return PaymentEvent(
        purchase_id=session_id,
        user_id=user_id,
        plan_type=plan_key,
        generations_granted=_parse_generations(
            _metadata_value(metadata, "generations"), f"Checkout session {session_id}"
        ),
        subscription_id=get_stripe_value(session, "subscription"),
    )


def _invoice_subscription(invoice: Any):
    """(subscription id, subscription metadata) across old and new invoice shapes"""
    details = get_stripe_value(invoice, "subscription_details")
    if details is None:
        parent = get_stripe_value(invoice, "parent")
        details = get_stripe_value(parent, "subscription_details")
    subscription_id = get_stripe_value(invoice, "subscription") or get_stripe_value(details, "subscription")
    if subscription_id is not None and not isinstance(subscription_id, str):
        subscription_id = get_stripe_value(subscription_id, "id")
    return subscription_id, get_stripe_value(details, "metadata", {})


def payment_event_from_renewal(invoice: Any, db: Session) -> Optional[PaymentEvent]:
    """Build the payment event for a subscription renewal (purchase id = invoice id).

    Returns None for invoices that are not renewals; the first invoice of a
    subscription is covered by its checkout session.

    Raises:
        MalformedPaymentEventError: renewal cannot be attributed to a user and plan
    """
    if get_stripe_value(invoice, "billing_reason") != RENEWAL_BILLING_REASON:
        return None

    invoice_id = get_stripe_value(invoice, "id")
    if not invoice_id:
        raise MalformedPaymentEventError("Invoice has no id")

    subscription_id, metadata = _invoice_subscription(invoice)
    raw_user_id = _metadata_value(metadata, "userId", "user_id")
    raw_plan = _metadata_value(metadata, "planType", "plan_type")

    if (raw_user_id is None or raw_plan is None) and subscription_id:
        # Subscriptions created before metadata was attached: fall back to the owner on file
        row = db.query(Entitlement).filter(Entitlement.stripe_subscription_id == subscription_id).first()
        if row:
            raw_user_id = raw_user_id or str(row.user_id)
            raw_plan = raw_plan or row.subscription_tier

    user_id = _parse_user_id(raw_user_id, f"Invoice {invoice_id}")
    if raw_plan is None:
        raise MalformedPaymentEventError(f"Invoice {invoice_id} cannot be attributed to a plan")
    plan_key = normalize_plan_type(raw_plan)
    if not is_recurring(plan_key):
        raise MalformedPaymentEventError(f"Invoice {invoice_id} renews non-recurring plan {plan_key}")

    return PaymentEvent(
        purchase_id=invoice_id,
        user_id=user_id,
        plan_type=plan_key,
        subscription_id=subscription_id,
    )


def record_stripe_customer(user_id: int, customer_id: Optional[str], db: Session) -> None:
    """Remember the Stripe customer so later checkouts reuse it"""
    if not customer_id:
        return
    user = db.query(User).filter(User.id == user_id).first()
    if user and user.stripe_customer_id != customer_id:
        user.stripe_customer_id = customer_id
        db.commit()
