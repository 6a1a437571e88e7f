"""Video job API routes"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from promoreel.core.config import settings
from promoreel.core.exceptions import AdmissionError, JobNotFoundError
from promoreel.core.security import require_auth
from promoreel.db.session import get_db
from promoreel.models.generated_video import GeneratedVideo
from promoreel.models.video_job import JobStatus, VideoJob
from promoreel.schemas.video_job import CreateJobRequest
from promoreel.services import job_store, orchestrator
from promoreel.services.credit_service import get_user
from promoreel.services.storage.s3_service import ObjectStorage, StorageError, get_storage_service

router = APIRouter(prefix="/api/videos", tags=["videos"])
logger = logging.getLogger(__name__)


def get_storage() -> ObjectStorage:
    """Dependency: object storage used for playback URLs"""
    return get_storage_service()


def _playback_url(storage: ObjectStorage, key: Optional[str], fallback: Optional[str]) -> Optional[str]:
    if not key:
        return fallback
    try:
        return storage.sign_for_playback(key, settings.PLAYBACK_URL_TTL)
    except StorageError as e:
        logger.warning(f"Falling back to stored URL for {key}: {e}")
        return fallback


def build_job_response(job: VideoJob, storage: Optional[ObjectStorage] = None) -> Dict[str, Any]:
    """Serialize a job; DONE jobs get a signed playback URL when storage is available"""
    response = {
        "id": job.id,
        "status": job.status,
        "product_name": job.product_name,
        "product_description": job.product_description,
        "target_length": job.target_length,
        "aspect_ratio": job.aspect_ratio,
        "scene_count": job.scene_count,
        "scenes_completed": len(job.scenes),
        "credit_pool": job.credit_pool,
        "credit_cost": job.credit_cost,
        "final_video_url": None,
        "total_duration": job.total_duration,
        "failure_stage": job.failure_stage,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "failed_at": job.failed_at.isoformat() if job.failed_at else None,
    }
    if job.status == JobStatus.DONE:
        if storage is not None:
            response["final_video_url"] = _playback_url(storage, job.final_video_key, job.final_video_url)
        else:
            response["final_video_url"] = job.final_video_url
    return response


def _require_user(user_id: int, db: Session):
    user = get_user(user_id, db)
    if not user:
        raise HTTPException(401, "User no longer exists. Please log in again.")
    return user


@router.post("/jobs", status_code=201)
def create_video_job(
    job_request: CreateJobRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create a PENDING video job after checking the request and available credit"""
    user = _require_user(user_id, db)
    try:
        job = orchestrator.create_job(user, job_request, db)
    except AdmissionError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return build_job_response(job)


@router.post("/jobs/{job_id}/generate", status_code=202)
def start_video_generation(
    job_id: str,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Start scene generation for a PENDING job; repeated calls are no-ops"""
    user = _require_user(user_id, db)
    try:
        job = orchestrator.start_generation(job_id, user, db)
    except JobNotFoundError:
        raise HTTPException(404, "Job not found")
    except AdmissionError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return build_job_response(job)


@router.get("/jobs")
def list_video_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=job_store.MAX_PAGE_SIZE),
    status: Optional[str] = Query(None),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Page through the user's jobs, newest first"""
    if status and status not in JobStatus.ALL:
        raise HTTPException(400, f"Invalid status. Must be one of: {', '.join(JobStatus.ALL)}")

    jobs, total = job_store.list_user_jobs(user_id, db, status=status, page=page, limit=limit)
    return {
        "jobs": [build_job_response(job) for job in jobs],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/jobs/{job_id}")
def get_video_job(
    job_id: str,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage)
):
    """Get one job; the final video URL is signed for playback"""
    job = job_store.get_user_job(job_id, user_id, db)
    if not job:
        raise HTTPException(404, "Job not found")
    return build_job_response(job, storage)


@router.get("")
def list_generated_videos(
    limit: int = Query(20, ge=1, le=100),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage)
):
    """Finished videos of the user, newest first"""
    videos = db.query(GeneratedVideo).filter(
        GeneratedVideo.user_id == user_id
    ).order_by(GeneratedVideo.created_at.desc(), GeneratedVideo.id.desc()).limit(limit).all()

    return {
        "videos": [
            {
                "id": video.id,
                "video_job_id": video.video_job_id,
                "product_name": video.product_name,
                "video_url": _playback_url(storage, video.video_key, video.video_url),
                "duration": video.duration,
                "aspect_ratio": video.aspect_ratio,
                "created_at": video.created_at.isoformat() if video.created_at else None,
            }
            for video in videos
        ]
    }
