"""VideoJob model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from promoreel.models.base import Base


class JobStatus:
    """Job lifecycle states"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    STITCHING = "STITCHING"
    DONE = "DONE"
    FAILED = "FAILED"

    ALL = (PENDING, PROCESSING, STITCHING, DONE, FAILED)
    TERMINAL = (DONE, FAILED)


def _new_job_id() -> str:
    return uuid.uuid4().hex


class VideoJob(Base):
    """One video assembled from generated scenes"""
    __tablename__ = "video_jobs"

    id = Column(String(32), primary_key=True, default=_new_job_id)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False)
    status = Column(String(20), default=JobStatus.PENDING, nullable=False)

    # Request
    product_name = Column(String(255), nullable=False)
    product_description = Column(Text, nullable=False)
    target_length = Column(Integer, nullable=False)  # seconds: 15, 30 or 45
    aspect_ratio = Column(String(10), default="9:16", nullable=False)
    scene_count = Column(Integer, nullable=False)

    # Credits
    credit_pool = Column(String(10), nullable=False)  # 'ugc' or 'veo'
    credit_cost = Column(Integer, nullable=False)
    credits_charged_at = Column(DateTime(timezone=True), nullable=True)

    # Outcome (DONE)
    final_video_url = Column(String(1024), nullable=True)
    final_video_key = Column(String(512), nullable=True)
    total_duration = Column(Integer, nullable=True)  # whole seconds

    # Outcome (FAILED)
    failure_stage = Column(String(20), nullable=True)  # GENERATING or STITCHING
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="video_jobs")
    scenes = relationship(
        "JobScene",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobScene.scene_index"
    )
    generated_video = relationship("GeneratedVideo", back_populates="video_job", uselist=False)

    # Composite indexes for common query patterns
    __table_args__ = (
        Index('ix_video_jobs_user_created', 'user_id', 'created_at'),
        Index('ix_video_jobs_status_updated', 'status', 'updated_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL
