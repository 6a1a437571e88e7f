"""Job orchestration - admission, scene generation and merge dispatch"""
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from promoreel.core.config import SCENES_PER_TARGET_LENGTH, settings
from promoreel.core.exceptions import (
    InsufficientCreditsError,
    InvalidJobRequestError,
    JobNotFoundError,
    SceneGenerationError,
)
from promoreel.core.logging import orchestrator_logger
from promoreel.core.metrics import admission_rejections_counter, video_jobs_created_counter
from promoreel.db.task_queue import GENERATE_SCENES_TASK, MERGE_VIDEO_TASK, enqueue_task
from promoreel.models.user import User
from promoreel.models.video_job import JobStatus, VideoJob
from promoreel.schemas.merge import ClipRef, MergeRequest
from promoreel.schemas.video_job import CreateJobRequest
from promoreel.services import credit_ledger, job_store
from promoreel.services.scene_generation import SceneGenerator
from promoreel.services.storage.s3_service import final_video_key


# Manual scene videos are paid from the secondary pool
JOB_CREDIT_POOL = credit_ledger.SECONDARY_POOL

MIN_PRODUCT_NAME_LENGTH = 2
MIN_DESCRIPTION_LENGTH = 10
DEFAULT_ASPECT_RATIO = "9:16"
ASPECT_RATIOS = ("9:16", "16:9", "1:1")


def validate_job_request(request: CreateJobRequest) -> None:
    """Raises InvalidJobRequestError on the first invalid field"""
    if len((request.product_name or "").strip()) < MIN_PRODUCT_NAME_LENGTH:
        raise InvalidJobRequestError("product_name", "Product name must be at least 2 characters")
    if len((request.product_description or "").strip()) < MIN_DESCRIPTION_LENGTH:
        raise InvalidJobRequestError("product_description", "Product description must be at least 10 characters")
    if request.target_length not in SCENES_PER_TARGET_LENGTH:
        allowed = ", ".join(str(length) for length in SCENES_PER_TARGET_LENGTH)
        raise InvalidJobRequestError("target_length", f"Target length must be one of: {allowed}")
    if request.aspect_ratio and request.aspect_ratio not in ASPECT_RATIOS:
        raise InvalidJobRequestError("aspect_ratio", f"Aspect ratio must be one of: {', '.join(ASPECT_RATIOS)}")


def create_job(user: User, request: CreateJobRequest, db: Session, now: Optional[datetime] = None) -> VideoJob:
    """Validate, admit against available credit and create a PENDING job

    Raises:
        InvalidJobRequestError: Malformed request, nothing written
        InsufficientCreditsError: Not enough credit, nothing written
    """
    try:
        validate_job_request(request)
    except InvalidJobRequestError:
        admission_rejections_counter.labels(reason="invalid_request").inc()
        raise

    cost = credit_ledger.credits_for_duration(request.target_length)
    try:
        credit_ledger.ensure_can_admit(user, JOB_CREDIT_POOL, cost, now)
    except InsufficientCreditsError as e:
        admission_rejections_counter.labels(reason="insufficient_credits").inc()
        orchestrator_logger.info(f"Rejected job for user {user.id}: needs {e.required}, has {e.available}")
        raise

    job = job_store.create_job(
        user=user,
        product_name=request.product_name.strip(),
        product_description=request.product_description.strip(),
        target_length=request.target_length,
        scene_count=SCENES_PER_TARGET_LENGTH[request.target_length],
        credit_pool=JOB_CREDIT_POOL,
        credit_cost=cost,
        db=db,
        aspect_ratio=request.aspect_ratio or DEFAULT_ASPECT_RATIO,
    )
    video_jobs_created_counter.inc()
    return job


def start_generation(
    job_id: str,
    user: User,
    db: Session,
    enqueue: Callable[..., str] = enqueue_task,
    now: Optional[datetime] = None
) -> VideoJob:
    """Accept a PENDING job: PENDING -> PROCESSING and queue its scene generation

    Calling it again for a job that already started returns the job unchanged.

    Raises:
        JobNotFoundError: Job missing or owned by someone else
        InsufficientCreditsError: Credit was spent elsewhere since creation
    """
    job = job_store.get_user_job(job_id, user.id, db)
    if not job:
        raise JobNotFoundError(job_id)
    if job.status != JobStatus.PENDING:
        orchestrator_logger.info(f"Job {job_id} already started (status {job.status})")
        return job

    credit_ledger.ensure_can_admit(user, job.credit_pool, job.credit_cost, now)

    result = job_store.start_processing(job_id, db)
    if result.applied:
        enqueue(GENERATE_SCENES_TASK, {"job_id": job_id})
        orchestrator_logger.info(f"Queued scene generation for job {job_id}")
    return result.job


def build_merge_request(job: VideoJob, db: Session) -> MergeRequest:
    """Merge request from the job's recorded scenes"""
    scenes = job_store.get_scenes(job.id, db)
    return MergeRequest(
        job_id=job.id,
        bucket=settings.S3_BUCKET_NAME,
        clips=[
            ClipRef(location=scene.location, scene_index=scene.scene_index, duration=scene.duration)
            for scene in scenes
        ],
        output_key=final_video_key(job.id),
    )


def dispatch_merge(job: VideoJob, db: Session, enqueue: Callable[..., str] = enqueue_task) -> str:
    """Queue the merge worker for a STITCHING job"""
    request = build_merge_request(job, db)
    task_id = enqueue(MERGE_VIDEO_TASK, request.model_dump(), max_retries=0)
    orchestrator_logger.info(f"Dispatched merge of {len(request.clips)} clips for job {job.id} (task {task_id})")
    return task_id


def on_scene_recorded(job_id: str, db: Session, enqueue: Callable[..., str] = enqueue_task) -> bool:
    """Start stitching when the last scene is in

    Safe to call after every scene and from concurrent writers: only the
    caller that wins PROCESSING -> STITCHING dispatches the merge.

    Returns:
        True if this call dispatched the merge
    """
    result = job_store.begin_stitching(job_id, db)
    if not result.applied:
        return False
    dispatch_merge(result.job, db, enqueue)
    return True


async def run_generation(
    job_id: str,
    db: Session,
    generator: SceneGenerator,
    enqueue: Callable[..., str] = enqueue_task
) -> Optional[VideoJob]:
    """Generate every missing scene of a PROCESSING job, then hand it to the merge worker

    Re-running after a crash only renders the scenes not yet recorded.
    """
    job = job_store.get_job(job_id, db)
    if not job:
        raise JobNotFoundError(job_id)
    if job.status != JobStatus.PROCESSING:
        orchestrator_logger.info(f"Skipping generation for job {job_id} in status {job.status}")
        return job

    recorded = {scene.scene_index for scene in job_store.get_scenes(job_id, db)}
    for scene_index in range(job.scene_count):
        if scene_index in recorded:
            continue
        try:
            clip = await generator.generate_scene(job, scene_index)
        except SceneGenerationError as e:
            orchestrator_logger.error(f"Scene {scene_index} of job {job_id} failed: {e}")
            job_store.fail_job(
                job_id,
                job_store.FAILURE_STAGE_GENERATING,
                str(e),
                db,
                expected=[JobStatus.PROCESSING]
            )
            return job_store.get_job(job_id, db)

        job_store.record_scene(job_id, clip.scene_index, clip.location, clip.duration, db)

    on_scene_recorded(job_id, db, enqueue)
    return job_store.get_job(job_id, db)
