"""JobScene model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from promoreel.models.base import Base


class JobScene(Base):
    """A rendered scene clip belonging to a video job (append-only)"""
    __tablename__ = "job_scenes"

    id = Column(Integer, primary_key=True, index=True)
    video_job_id = Column(String(32), ForeignKey("video_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    scene_index = Column(Integer, nullable=False)  # 0-based position in the final video
    location = Column(String(512), nullable=False)  # Object key of the raw clip
    duration = Column(Float, nullable=False)  # seconds
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    job = relationship("VideoJob", back_populates="scenes")

    __table_args__ = (
        UniqueConstraint('video_job_id', 'scene_index', name='uq_job_scenes_job_index'),
    )
