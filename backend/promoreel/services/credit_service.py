"""Credit service - persists ledger decisions with an audit trail"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from promoreel.core.logging import ledger_logger
from promoreel.core.metrics import credit_resets_counter, credits_charged_counter
from promoreel.models.credit_transaction import CreditTransaction
from promoreel.models.user import User
from promoreel.models.video_job import VideoJob
from promoreel.services import credit_ledger
from promoreel.services.credit_ledger import POOLS, pool_fields

logger = logging.getLogger(__name__)

CHARGE_TRANSACTION = "charge"
RESET_TRANSACTION = "reset"
PLAN_CHANGE_TRANSACTION = "plan_change"


def get_user(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def _pool_summary(user: User, pool: str, now: datetime) -> Dict[str, Any]:
    balance = credit_ledger.read_pool(user, pool)
    credits = credit_ledger.available_credits(user, pool, now)
    return {
        "available": credits.available,
        "has_carryover": credits.has_carryover,
        "allowed": balance.allowed,
        "used": balance.used,
        "carryover": balance.carryover if credit_ledger.carryover_is_live(balance, now) else 0,
        "carryover_expiry": balance.carryover_expiry.isoformat() if balance.carryover_expiry else None,
    }


def get_credit_summary(user_id: int, db: Session, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Availability of both pools for display

    Returns:
        Dict keyed by pool name plus billing cycle info, or None if user not found
    """
    user = get_user(user_id, db)
    if not user:
        return None

    now = now or datetime.now(timezone.utc)
    summary = {pool: _pool_summary(user, pool, now) for pool in POOLS}
    summary["plan_tier"] = user.plan_tier
    summary["next_credit_reset"] = user.next_credit_reset.isoformat() if user.next_credit_reset else None
    return summary


def charge_job(job: VideoJob, db: Session, now: Optional[datetime] = None) -> CreditTransaction:
    """Consume a completed job's cost from its pool

    Runs inside the caller's transaction and does not commit: the charge only
    becomes visible together with the job's DONE transition. The unique
    (video_job_id, transaction_type) constraint rejects a second charge.

    Args:
        job: Job that just moved to DONE
        db: Database session (transaction owned by caller)
        now: Clock override for carryover expiry checks

    Returns:
        The audit row that was added
    """
    now = now or datetime.now(timezone.utc)
    user = db.query(User).filter(User.id == job.user_id).with_for_update().first()
    if not user:
        raise ValueError(f"User {job.user_id} not found for job {job.id}")

    fields = pool_fields(job.credit_pool)
    available_before = credit_ledger.available_credits(user, job.credit_pool, now).available
    plan = credit_ledger.plan_charge(user, job.credit_pool, job.credit_cost, now)

    setattr(user, fields.used, (getattr(user, fields.used) or 0) + plan.used_delta)
    setattr(user, fields.carryover, (getattr(user, fields.carryover) or 0) + plan.carryover_delta)
    job.credits_charged_at = now

    available_after = credit_ledger.available_credits(user, job.credit_pool, now).available
    transaction = CreditTransaction(
        user_id=user.id,
        video_job_id=job.id,
        pool=job.credit_pool,
        transaction_type=CHARGE_TRANSACTION,
        credits=-job.credit_cost,
        available_before=available_before,
        available_after=available_after,
        transaction_metadata={
            "from_base": plan.from_base,
            "from_carryover": plan.from_carryover,
            "overuse": plan.overuse,
        }
    )
    db.add(transaction)
    db.flush()

    credits_charged_counter.labels(pool=job.credit_pool).inc(job.credit_cost)
    ledger_logger.info(
        f"Charged {job.credit_cost} {job.credit_pool} credits to user {user.id} for job {job.id} "
        f"({plan.from_base} base, {plan.from_carryover} carryover, {plan.overuse} overuse; "
        f"available: {available_before} -> {available_after})"
    )
    if plan.overuse:
        ledger_logger.warning(f"Job {job.id} overused {plan.overuse} {job.credit_pool} credits for user {user.id}")
    return transaction


def reset_credits_if_due(user: User, db: Session, now: Optional[datetime] = None) -> bool:
    """Roll both pools into a new monthly period when the reset date has arrived

    Returns:
        True if the user was reset
    """
    now = now or datetime.now(timezone.utc)
    if not credit_ledger.should_reset(user, now):
        return False

    limits = credit_ledger.plan_limits(user.plan_tier)
    allowances = {
        credit_ledger.PRIMARY_POOL: limits["credits"],
        credit_ledger.SECONDARY_POOL: limits["veo_credits"],
    }

    try:
        for pool in POOLS:
            fields = pool_fields(pool)
            available_before = credit_ledger.available_credits(user, pool, now).available
            rollover = credit_ledger.roll_period(user, pool, now)

            setattr(user, fields.allowed, allowances[pool])
            setattr(user, fields.used, rollover.used)
            setattr(user, fields.carryover, rollover.carryover)
            setattr(user, fields.carryover_expiry, rollover.carryover_expiry)

            db.add(CreditTransaction(
                user_id=user.id,
                pool=pool,
                transaction_type=RESET_TRANSACTION,
                credits=allowances[pool],
                available_before=available_before,
                available_after=credit_ledger.available_credits(user, pool, now).available,
                transaction_metadata={"plan_tier": user.plan_tier}
            ))

        reset_day = user.credit_reset_day or now.day
        user.next_credit_reset = credit_ledger.next_reset_date(now, reset_day)
        db.commit()
    except Exception:
        db.rollback()
        raise

    credit_resets_counter.inc()
    ledger_logger.info(f"Reset credits for user {user.id}; next reset {user.next_credit_reset.isoformat()}")
    return True


def reset_due_users(db: Session, now: Optional[datetime] = None) -> int:
    """Reset every user whose next reset date has been reached

    Returns:
        Number of users reset
    """
    now = now or datetime.now(timezone.utc)
    candidates = db.query(User).filter(
        User.next_credit_reset.isnot(None),
        User.next_credit_reset <= now
    ).all()

    reset_count = 0
    for user in candidates:
        try:
            if reset_credits_if_due(user, db, now):
                reset_count += 1
        except Exception as e:
            logger.error(f"Error resetting credits for user {user.id}: {e}", exc_info=True)

    return reset_count


def apply_plan(user: User, plan_tier: str, db: Session, now: Optional[datetime] = None) -> User:
    """Switch a user to a plan tier, carrying unused credit of the old plan over

    A first subscription starts a billing cycle on today's day of month. A
    plan change keeps the existing cycle and moves unused credit of each
    pool into carryover that lives until the old period ends.
    """
    if plan_tier not in credit_ledger.PLAN_LIMITS:
        raise ValueError(f"Unknown plan tier: {plan_tier}")

    now = now or datetime.now(timezone.utc)
    limits = credit_ledger.plan_limits(plan_tier)
    allowances = {
        credit_ledger.PRIMARY_POOL: limits["credits"],
        credit_ledger.SECONDARY_POOL: limits["veo_credits"],
    }
    is_plan_change = user.plan_tier not in (None, "free") and user.next_credit_reset is not None

    try:
        for pool in POOLS:
            fields = pool_fields(pool)
            balance = credit_ledger.read_pool(user, pool)
            available_before = credit_ledger.available_credits(user, pool, now).available

            if is_plan_change:
                carry = credit_ledger.calculate_carryover(
                    old_allowed=balance.allowed,
                    old_used=balance.used,
                    old_next_reset=user.next_credit_reset,
                    existing_carryover=balance.carryover,
                    existing_expiry=balance.carryover_expiry,
                    now=now
                )
                setattr(user, fields.carryover, carry.amount)
                setattr(user, fields.carryover_expiry, carry.expiry)

            setattr(user, fields.allowed, allowances[pool])
            setattr(user, fields.used, 0)

            db.add(CreditTransaction(
                user_id=user.id,
                pool=pool,
                transaction_type=PLAN_CHANGE_TRANSACTION,
                credits=allowances[pool],
                available_before=available_before,
                available_after=credit_ledger.available_credits(user, pool, now).available,
                transaction_metadata={"from_plan": user.plan_tier, "to_plan": plan_tier}
            ))

        if not is_plan_change or credit_ledger.should_reset(user, now):
            user.credit_reset_day = user.credit_reset_day if is_plan_change and user.credit_reset_day else now.day
            user.next_credit_reset = credit_ledger.next_reset_date(now, user.credit_reset_day)

        ledger_logger.info(f"User {user.id} plan {user.plan_tier} -> {plan_tier} (carryover={is_plan_change})")
        user.plan_tier = plan_tier
        db.commit()
        db.refresh(user)
    except Exception:
        db.rollback()
        raise

    return user


def get_credit_transactions(user_id: int, db: Session, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent ledger audit rows for a user"""
    transactions = db.query(CreditTransaction).filter(
        CreditTransaction.user_id == user_id
    ).order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit).all()

    return [
        {
            "id": t.id,
            "video_job_id": t.video_job_id,
            "pool": t.pool,
            "transaction_type": t.transaction_type,
            "credits": t.credits,
            "available_before": t.available_before,
            "available_after": t.available_after,
            "metadata": t.transaction_metadata or {},
            "created_at": t.created_at.isoformat() if t.created_at else None,
        }
        for t in transactions
    ]
