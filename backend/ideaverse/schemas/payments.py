"""Pydantic schemas for payment events"""
from pydantic import BaseModel, Field
from typing import Optional


class PaymentEvent(BaseModel):
    """A completed purchase, normalised from whatever the payment provider sent.

    purchase_id is the idempotency key: checkout session id for initial
    purchases, invoice id for renewals.
    """
    purchase_id: str = Field(min_length=1)
    user_id: int
    plan_type: str = Field(min_length=1)
    generations_granted: Optional[int] = None  # None -> plan catalog allotment
    subscription_id: Optional[str] = None
