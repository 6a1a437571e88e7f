"""Job store - persistence and state machine for video jobs

Every status change is a compare-and-swap: an UPDATE guarded by the set of
statuses the transition is allowed from. Exactly one writer wins; the others
get ``TransitionResult(applied=False)`` and must treat the job as already
handled.

    PENDING -> PROCESSING -> STITCHING -> DONE
       |           |             |
       +-----------+-------------+----> FAILED
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from promoreel.core.metrics import video_jobs_finished_counter
from promoreel.models.generated_video import GeneratedVideo
from promoreel.models.job_scene import JobScene
from promoreel.models.user import User
from promoreel.models.video_job import JobStatus, VideoJob
from promoreel.services import credit_service
from promoreel.services.merge.filters import round_duration

logger = logging.getLogger(__name__)

FAILURE_STAGE_GENERATING = "GENERATING"
FAILURE_STAGE_STITCHING = "STITCHING"

MAX_PAGE_SIZE = 50


@dataclass
class TransitionResult:
    applied: bool
    job: Optional[VideoJob]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_job(
    user: User,
    product_name: str,
    product_description: str,
    target_length: int,
    scene_count: int,
    credit_pool: str,
    credit_cost: int,
    db: Session,
    aspect_ratio: str = "9:16"
) -> VideoJob:
    """Create a PENDING job owned by ``user``"""
    job = VideoJob(
        user_id=user.id,
        user_email=user.email,
        status=JobStatus.PENDING,
        product_name=product_name,
        product_description=product_description,
        target_length=target_length,
        scene_count=scene_count,
        aspect_ratio=aspect_ratio,
        credit_pool=credit_pool,
        credit_cost=credit_cost,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Created video job {job.id} for user {user.id} ({scene_count} scenes, {credit_cost} {credit_pool} credits)")
    return job


def get_job(job_id: str, db: Session) -> Optional[VideoJob]:
    return db.query(VideoJob).filter(VideoJob.id == job_id).first()


def get_user_job(job_id: str, user_id: int, db: Session) -> Optional[VideoJob]:
    """Get a job only if it belongs to ``user_id``"""
    return db.query(VideoJob).filter(VideoJob.id == job_id, VideoJob.user_id == user_id).first()


def list_user_jobs(
    user_id: int,
    db: Session,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10
) -> Tuple[List[VideoJob], int]:
    """Page through a user's jobs, newest first

    Returns:
        (jobs on the page, total matching jobs)
    """
    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))

    query = db.query(VideoJob).filter(VideoJob.user_id == user_id)
    if status:
        query = query.filter(VideoJob.status == status)

    total = query.count()
    jobs = query.order_by(VideoJob.created_at.desc(), VideoJob.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return jobs, total


def transition(
    job_id: str,
    expected: Iterable[str],
    new_status: str,
    db: Session,
    commit: bool = True,
    **fields: Any
) -> bool:
    """Conditionally move a job to ``new_status``

    Args:
        job_id: Job to update
        expected: Statuses the job must currently be in
        new_status: Target status
        db: Database session
        commit: Commit when the update applied (False keeps the caller's transaction open)
        **fields: Extra columns written with the status

    Returns:
        True if this call performed the transition
    """
    values = {"status": new_status, "updated_at": _utcnow(), **fields}
    updated = db.query(VideoJob).filter(
        VideoJob.id == job_id,
        VideoJob.status.in_(list(expected))
    ).update(values, synchronize_session=False)

    if updated != 1:
        logger.info(f"Job {job_id} transition to {new_status} not applied (expected {list(expected)})")
        return False

    if commit:
        db.commit()
    logger.info(f"Job {job_id} -> {new_status}")
    return True


def _reload(job_id: str, db: Session) -> Optional[VideoJob]:
    db.expire_all()
    return get_job(job_id, db)


def start_processing(job_id: str, db: Session) -> TransitionResult:
    """PENDING -> PROCESSING"""
    applied = transition(job_id, [JobStatus.PENDING], JobStatus.PROCESSING, db)
    return TransitionResult(applied, _reload(job_id, db))


def record_scene(job_id: str, scene_index: int, location: str, duration: float, db: Session) -> Optional[JobScene]:
    """Append a rendered scene to a PROCESSING job

    Returns:
        The new scene, or None when the index is already recorded or the job
        is no longer generating
    """
    job = get_job(job_id, db)
    if not job or job.status != JobStatus.PROCESSING:
        logger.warning(f"Ignoring scene {scene_index} for job {job_id}: job is not processing")
        return None
    if scene_index < 0 or scene_index >= job.scene_count:
        raise ValueError(f"Scene index {scene_index} out of range for job {job_id} ({job.scene_count} scenes)")

    existing = db.query(JobScene).filter(
        JobScene.video_job_id == job_id,
        JobScene.scene_index == scene_index
    ).first()
    if existing:
        logger.info(f"Scene {scene_index} already recorded for job {job_id}")
        return None

    scene = JobScene(video_job_id=job_id, scene_index=scene_index, location=location, duration=duration)
    db.add(scene)
    try:
        db.query(VideoJob).filter(VideoJob.id == job_id).update(
            {"updated_at": _utcnow()}, synchronize_session=False
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Scene {scene_index} for job {job_id} recorded concurrently")
        return None

    db.refresh(scene)
    return scene


def get_scenes(job_id: str, db: Session) -> List[JobScene]:
    """Recorded scenes in scene order"""
    return db.query(JobScene).filter(JobScene.video_job_id == job_id).order_by(JobScene.scene_index).all()


def begin_stitching(job_id: str, db: Session) -> TransitionResult:
    """PROCESSING -> STITCHING once every scene is recorded

    Only the caller that gets ``applied=True`` may dispatch the merge.
    """
    job = get_job(job_id, db)
    if not job:
        return TransitionResult(False, None)

    recorded = db.query(JobScene).filter(JobScene.video_job_id == job_id).count()
    if recorded < job.scene_count:
        logger.info(f"Job {job_id} has {recorded}/{job.scene_count} scenes, not stitching yet")
        return TransitionResult(False, job)

    applied = transition(job_id, [JobStatus.PROCESSING], JobStatus.STITCHING, db)
    return TransitionResult(applied, _reload(job_id, db))


def complete_job(
    job_id: str,
    final_video_url: str,
    final_video_key: Optional[str],
    total_duration: Optional[float],
    db: Session,
    now: Optional[datetime] = None
) -> TransitionResult:
    """STITCHING -> DONE, creating the GeneratedVideo and charging credits

    The status change, the GeneratedVideo row and the ledger charge commit
    together or not at all. An unknown duration stays null on the job and is
    recorded as 0 on the GeneratedVideo.
    """
    if not final_video_url:
        raise ValueError("A completed job requires a final video location")

    now = now or _utcnow()
    duration = round_duration(total_duration) if total_duration is not None else None

    try:
        applied = transition(
            job_id,
            [JobStatus.STITCHING],
            JobStatus.DONE,
            db,
            commit=False,
            final_video_url=final_video_url,
            final_video_key=final_video_key,
            total_duration=duration,
            completed_at=now,
            error_message=None,
            failure_stage=None,
        )
        if not applied:
            db.rollback()
            return TransitionResult(False, _reload(job_id, db))

        job = _reload(job_id, db)
        db.add(GeneratedVideo(
            user_id=job.user_id,
            user_email=job.user_email,
            video_job_id=job.id,
            product_name=job.product_name,
            video_url=final_video_url,
            video_key=final_video_key,
            duration=duration or 0,
            aspect_ratio=job.aspect_ratio or "9:16",
        ))
        credit_service.charge_job(job, db, now)
        db.commit()
    except IntegrityError:
        # Another writer already created the GeneratedVideo or the charge
        db.rollback()
        logger.warning(f"Job {job_id} completion lost a race on unique constraints")
        return TransitionResult(False, _reload(job_id, db))
    except Exception:
        db.rollback()
        raise

    video_jobs_finished_counter.labels(status=JobStatus.DONE, failure_stage="").inc()
    return TransitionResult(True, _reload(job_id, db))


def fail_job(
    job_id: str,
    failure_stage: str,
    error_message: str,
    db: Session,
    expected: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None
) -> TransitionResult:
    """Move a non-terminal job to FAILED

    Args:
        expected: Statuses allowed to fail from; defaults to every non-terminal status
    """
    if expected is None:
        expected = [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.STITCHING]

    applied = transition(
        job_id,
        expected,
        JobStatus.FAILED,
        db,
        failure_stage=failure_stage,
        error_message=error_message,
        failed_at=now or _utcnow(),
        final_video_url=None,
        final_video_key=None,
    )
    if applied:
        video_jobs_finished_counter.labels(status=JobStatus.FAILED, failure_stage=failure_stage).inc()
    return TransitionResult(applied, _reload(job_id, db))


def find_stale_jobs(statuses: Iterable[str], older_than: datetime, db: Session) -> List[VideoJob]:
    """Jobs in ``statuses`` not updated since ``older_than``"""
    return db.query(VideoJob).filter(
        VideoJob.status.in_(list(statuses)),
        VideoJob.updated_at < older_than
    ).order_by(VideoJob.updated_at).all()
