"""Pydantic schemas for credits and plan purchases"""
from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    plan_tier: str  # 'starter', 'professional', 'business', 'scale'


class VerifyCheckoutRequest(BaseModel):
    session_id: str
