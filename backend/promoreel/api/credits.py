"""Credits and plan purchase API routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from promoreel.core.config import settings
from promoreel.core.security import require_auth
from promoreel.db.session import get_db
from promoreel.schemas.credits import CheckoutRequest, VerifyCheckoutRequest
from promoreel.services import billing_service
from promoreel.services.credit_service import get_credit_summary, get_credit_transactions, get_user

router = APIRouter(prefix="/api/credits", tags=["credits"])
logger = logging.getLogger(__name__)


@router.get("")
def get_credits(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Available credit per pool"""
    summary = get_credit_summary(user_id, db)
    if summary is None:
        raise HTTPException(404, "User not found")
    return summary


@router.get("/transactions")
def list_credit_transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Credit ledger history"""
    return {"transactions": get_credit_transactions(user_id, db, limit=limit)}


@router.post("/checkout")
def create_checkout(
    checkout_request: CheckoutRequest,
    request: Request,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create a Stripe checkout session for a plan"""
    user = get_user(user_id, db)
    if not user:
        raise HTTPException(404, "User not found")

    frontend_url = settings.FRONTEND_URL or str(request.base_url).rstrip("/")
    try:
        return billing_service.create_plan_checkout(user, checkout_request.plan_tier, frontend_url)
    except billing_service.UpsellBlockedError as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout for user {user_id}: {e}")
        raise HTTPException(502, "Payment provider error")


@router.post("/checkout/verify")
def verify_checkout(
    verify_request: VerifyCheckoutRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Apply a paid checkout session's plan to the current user"""
    user = get_user(user_id, db)
    if not user:
        raise HTTPException(404, "User not found")

    try:
        return billing_service.verify_plan_checkout(user, verify_request.session_id, db)
    except PermissionError as e:
        raise HTTPException(403, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe error verifying checkout {verify_request.session_id}: {e}")
        raise HTTPException(502, "Payment provider error")
