"""CreditTransaction model"""
from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from promoreel.models.base import Base


class CreditTransaction(Base):
    """Credit ledger audit log"""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    video_job_id = Column(String(32), ForeignKey("video_jobs.id", ondelete="SET NULL"), nullable=True)
    pool = Column(String(10), nullable=False)  # 'ugc' or 'veo'
    transaction_type = Column(String(50), nullable=False)  # 'charge', 'reset', 'grant', 'carryover'
    credits = Column(Integer, nullable=False)  # Negative for charges
    available_before = Column(Integer, nullable=False)
    available_after = Column(Integer, nullable=False)
    transaction_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    user = relationship("User", back_populates="credit_transactions")

    __table_args__ = (
        # A job is charged at most once even if two writers race past the status guard
        UniqueConstraint('video_job_id', 'transaction_type', name='uq_credit_transactions_job_type'),
        Index('ix_credit_transactions_user_created', 'user_id', 'created_at'),
    )
