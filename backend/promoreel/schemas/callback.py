"""Pydantic schemas for the merge callback"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from promoreel.schemas.merge import MergeFailed, MergeOutcome, MergeSucceeded

# Error text stored when a failed merge reports no message
MERGE_FAILED_FALLBACK_MESSAGE = "Video merge failed"


class MergeCallbackPayload(BaseModel):
    """Body POSTed by the merge worker, camelCase on the wire"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: Optional[str] = Field(default=None, alias="jobId")
    success: bool = False
    final_video_url: Optional[str] = Field(default=None, alias="finalVideoUrl")
    final_video_key: Optional[str] = Field(default=None, alias="finalVideoKey")
    total_duration: Optional[float] = Field(default=None, alias="totalDuration")
    error: Optional[str] = None
    stage: Optional[str] = None
    secret: Optional[str] = None

    def to_outcome(self) -> MergeOutcome:
        """Tagged outcome; a success without a final location counts as a failure"""
        if self.success and self.final_video_url:
            return MergeSucceeded(
                final_video_url=self.final_video_url,
                final_video_key=self.final_video_key,
                total_duration=self.total_duration,
            )
        return MergeFailed(stage=self.stage, message=self.error or MERGE_FAILED_FALLBACK_MESSAGE)

    @classmethod
    def from_outcome(cls, job_id: str, outcome: MergeOutcome, secret: str) -> "MergeCallbackPayload":
        if isinstance(outcome, MergeSucceeded):
            return cls(
                job_id=job_id,
                success=True,
                final_video_url=outcome.final_video_url,
                final_video_key=outcome.final_video_key,
                total_duration=outcome.total_duration,
                secret=secret,
            )
        return cls(job_id=job_id, success=False, error=outcome.message, stage=outcome.stage, secret=secret)


class MergeCallbackResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    applied: bool = False
    error: Optional[str] = None
