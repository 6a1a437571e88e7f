"""User model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from promoreel.models.base import Base


class User(Base):
    """User accounts with their embedded credit account

    Two independent pools: the primary ("ugc") pool and the secondary ("veo")
    pool. Each has a base allowance, usage in the current period, and a
    carryover that only counts until its expiry.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    # Billing cycle
    plan_tier = Column(String(50), default="free", nullable=False)  # free, starter, professional, business, scale
    credit_reset_day = Column(Integer, nullable=True)  # Day of month (1-31) the period rolls over
    next_credit_reset = Column(DateTime(timezone=True), nullable=True)

    # Primary pool
    credits_allowed = Column(Integer, default=0, nullable=False)
    credits_used = Column(Integer, default=0, nullable=False)
    carryover = Column(Integer, default=0, nullable=False)
    carryover_expiry = Column(DateTime(timezone=True), nullable=True)

    # Secondary pool
    credits_allowed_veo = Column(Integer, default=0, nullable=False)
    credits_used_veo = Column(Integer, default=0, nullable=False)
    carryover_veo = Column(Integer, default=0, nullable=False)
    carryover_expiry_veo = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    video_jobs = relationship("VideoJob", back_populates="user", cascade="all, delete-orphan")
    generated_videos = relationship("GeneratedVideo", back_populates="user", cascade="all, delete-orphan")
    credit_transactions = relationship("CreditTransaction", back_populates="user", cascade="all, delete-orphan")
