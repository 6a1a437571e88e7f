"""GeneratedVideo model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from promoreel.models.base import Base


class GeneratedVideo(Base):
    """Finished video shown to the user, written once when its job reaches DONE"""
    __tablename__ = "generated_videos"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False)
    video_job_id = Column(String(32), ForeignKey("video_jobs.id", ondelete="CASCADE"), unique=True, nullable=False)
    product_name = Column(String(255), nullable=False)
    video_url = Column(String(1024), nullable=False)
    video_key = Column(String(512), nullable=True)
    duration = Column(Integer, nullable=False)  # whole seconds
    aspect_ratio = Column(String(10), default="9:16", nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="generated_videos")
    video_job = relationship("VideoJob", back_populates="generated_video")

    __table_args__ = (
        Index('ix_generated_videos_user_created', 'user_id', 'created_at'),
    )
