"""Stripe checkout for plan purchases"""
import logging
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from promoreel.core.config import settings
from promoreel.db.redis import get_redis_client
from promoreel.models.user import User
from promoreel.services import credit_ledger
from promoreel.services.credit_service import apply_plan

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY

# A paid checkout session is applied once, even if the success page is reloaded
APPLIED_CHECKOUT_KEY_PREFIX = "checkout:applied:"
APPLIED_CHECKOUT_TTL = 90 * 24 * 60 * 60


class UpsellBlockedError(Exception):
    """User still has more credit than the upsell threshold"""

    def __init__(self, available: int, threshold: int):
        super().__init__(
            f"You still have {available} credits available. "
            f"Plans can be purchased once {threshold} or fewer remain."
        )
        self.available = available
        self.threshold = threshold


def get_price_id(plan_tier: str) -> Optional[str]:
    """Stripe price configured for a paid plan tier"""
    prices = {
        "starter": settings.STRIPE_PRICE_STARTER,
        "professional": settings.STRIPE_PRICE_PROFESSIONAL,
        "business": settings.STRIPE_PRICE_BUSINESS,
        "scale": settings.STRIPE_PRICE_SCALE,
    }
    return prices.get(plan_tier) or None


def create_plan_checkout(user: User, plan_tier: str, frontend_url: str) -> Dict[str, Any]:
    """Create a Stripe checkout session for a plan purchase

    Raises:
        ValueError: Unknown tier or Stripe not configured
        UpsellBlockedError: User has too much credit left to buy a plan
    """
    if not settings.STRIPE_SECRET_KEY:
        raise ValueError("Stripe not configured")

    price_id = get_price_id(plan_tier)
    if not price_id:
        raise ValueError(f"Plan '{plan_tier}' is not available for purchase")

    if not credit_ledger.can_purchase_plan(user):
        available = credit_ledger.available_credits(user, credit_ledger.PRIMARY_POOL).available
        raise UpsellBlockedError(available, settings.UPSELL_CREDIT_THRESHOLD)

    checkout_params = {
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "mode": "subscription",
        "success_url": f"{frontend_url}/billing?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{frontend_url}/billing",
        "metadata": {"user_id": str(user.id), "plan_tier": plan_tier, "email": user.email},
    }
    if user.stripe_customer_id:
        checkout_params["customer"] = user.stripe_customer_id
    else:
        checkout_params["customer_email"] = user.email

    session = stripe.checkout.Session.create(**checkout_params)
    logger.info(f"Created checkout session {session.id} for user {user.id} ({plan_tier})")
    return {"id": session.id, "url": session.url}


def verify_plan_checkout(user: User, session_id: str, db: Session) -> Dict[str, Any]:
    """Apply the plan of a paid checkout session to its owner

    Returns:
        Dict with the checkout status and the user's plan tier

    Raises:
        ValueError: Stripe not configured
        PermissionError: Session belongs to another account
    """
    if not settings.STRIPE_SECRET_KEY:
        raise ValueError("Stripe not configured")

    session = stripe.checkout.Session.retrieve(session_id)
    metadata = session.metadata or {}

    session_email = metadata.get("email") or getattr(session, "customer_email", None)
    if not session_email or session_email.lower() != (user.email or "").lower():
        raise PermissionError("Checkout session does not belong to current user")

    if session.payment_status != "paid":
        return {"status": "pending", "payment_status": session.payment_status, "plan_tier": user.plan_tier}

    plan_tier = metadata.get("plan_tier")
    if plan_tier not in credit_ledger.PLAN_LIMITS:
        raise ValueError(f"Checkout session has unknown plan tier: {plan_tier}")

    redis_client = get_redis_client()
    applied_key = f"{APPLIED_CHECKOUT_KEY_PREFIX}{session_id}"
    if not redis_client.set(applied_key, user.id, nx=True, ex=APPLIED_CHECKOUT_TTL):
        logger.info(f"Checkout session {session_id} already applied for user {user.id}")
        return {"status": "complete", "plan_tier": user.plan_tier}

    if session.customer and not user.stripe_customer_id:
        user.stripe_customer_id = session.customer

    try:
        apply_plan(user, plan_tier, db)
    except Exception:
        redis_client.delete(applied_key)
        raise
    logger.info(f"Applied plan {plan_tier} to user {user.id} from checkout {session_id}")
    return {"status": "complete", "plan_tier": user.plan_tier}
