"""Pydantic schemas for merge worker requests and outcomes"""
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

# Stage tags reported by a failed merge run
STAGE_DOWNLOAD = "DOWNLOAD"
STAGE_SILENCE_DETECTION = "SILENCE_DETECTION"
STAGE_TRIM = "TRIM"
STAGE_MERGE = "MERGE"
STAGE_UPLOAD = "UPLOAD"


class ClipRef(BaseModel):
    """One scene clip to merge"""
    location: str  # Object key in the bucket
    scene_index: int
    duration: float  # seconds, as reported by the scene generator


class MergeRequest(BaseModel):
    """Payload of a merge_video task"""
    job_id: str
    bucket: str
    clips: List[ClipRef]
    output_key: str
    crossfade_duration: Optional[float] = Field(default=None, ge=0)


class MergeSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    final_video_url: str
    final_video_key: Optional[str] = None
    total_duration: Optional[float] = None  # seconds, unrounded


class MergeFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    stage: Optional[str] = None
    message: str


MergeOutcome = Union[MergeSucceeded, MergeFailed]
