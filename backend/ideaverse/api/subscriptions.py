"""Subscriptions API routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ideaverse.core.config import settings
from ideaverse.core.errors import AccountNotFoundError
from ideaverse.core.security import require_auth
from ideaverse.db.session import get_db
from ideaverse.schemas.subscriptions import CheckoutRequest
from ideaverse.services.subscription_service import (
    check_checkout_status, create_subscription_checkout, list_available_plans,
    process_stripe_webhook, unsubscribe
)

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/plans")
def get_subscription_plans():
    """Get purchasable plans"""
    return list_available_plans()


@router.get("/config")
def get_stripe_config():
    """Stripe publishable key for the frontend"""
    if not settings.STRIPE_PUBLISHABLE_KEY:
        raise HTTPException(503, "Stripe not configured")
    return {"publishable_key": settings.STRIPE_PUBLISHABLE_KEY}


@router.post("/create-checkout")
def create_checkout(
    checkout_request: CheckoutRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create a Stripe checkout session for a plan"""
    try:
        return create_subscription_checkout(user_id, checkout_request.plan_key, settings.FRONTEND_URL, db)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating checkout for user {user_id}: {e}")
        raise HTTPException(502, "Payment provider error")


@router.get("/checkout-status")
def get_checkout_status(
    session_id: str = Query(..., min_length=1),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Reconcile a checkout after returning from Stripe"""
    try:
        return check_checkout_status(session_id, user_id, db)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except stripe.error.StripeError as e:
        logger.error(f"Stripe error checking session {session_id}: {e}")
        raise HTTPException(502, "Payment provider error")


@router.post("/unsubscribe")
def unsubscribe_route(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Cancel the current plan; remaining balances are kept"""
    try:
        return unsubscribe(user_id, db)
    except AccountNotFoundError as e:
        raise HTTPException(401, str(e))


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: the body must reach this route as raw bytes for signature verification.
    A 500 makes Stripe redeliver the event.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        return process_stripe_webhook(payload, sig_header, db)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, str(e))
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")
    except Exception as e:
        logger.error(f"Webhook processing failed, leaving it for redelivery: {e}", exc_info=True)
        raise HTTPException(500, "Webhook processing failed")
