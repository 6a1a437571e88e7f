"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from promoreel.models.base import Base
from promoreel.models.user import User
from promoreel.models.video_job import VideoJob, JobStatus
from promoreel.models.job_scene import JobScene
from promoreel.models.generated_video import GeneratedVideo
from promoreel.models.credit_transaction import CreditTransaction

# Export all for convenience
__all__ = [
    "Base", "User", "VideoJob", "JobStatus", "JobScene",
    "GeneratedVideo", "CreditTransaction"
]
