"""Pydantic schemas for subscriptions"""
from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    plan_key: str  # 'one_shot' / 'one-shot', 'spark', 'creator', 'universe'
