"""Stale job sweep - terminates jobs whose worker never came back"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.orm import Session

from promoreel.core.config import settings
from promoreel.core.metrics import stale_jobs_counter
from promoreel.db.session import SessionLocal
from promoreel.models.video_job import JobStatus
from promoreel.services import callback_service, job_store

logger = logging.getLogger(__name__)


def sweep_stale_jobs(db: Session, now: Optional[datetime] = None, timeout_seconds: Optional[int] = None) -> Dict[str, int]:
    """Fail STITCHING and PROCESSING jobs untouched for longer than the timeout

    STITCHING jobs are failed through the reconciler so a late merge callback
    and the sweep cannot both win.

    Returns:
        Number of jobs failed per previous status
    """
    now = now or datetime.now(timezone.utc)
    if timeout_seconds is None:
        timeout_seconds = settings.STALE_JOB_TIMEOUT_SECONDS
    cutoff = now - timedelta(seconds=timeout_seconds)
    failed = {JobStatus.STITCHING: 0, JobStatus.PROCESSING: 0}

    for job in job_store.find_stale_jobs([JobStatus.STITCHING, JobStatus.PROCESSING], cutoff, db):
        job_id, status = job.id, job.status
        try:
            if status == JobStatus.STITCHING:
                result = callback_service.fail_stitching_job(
                    job_id,
                    f"Video merge did not finish within {timeout_seconds} seconds",
                    db
                )
            else:
                result = job_store.fail_job(
                    job_id,
                    job_store.FAILURE_STAGE_GENERATING,
                    f"Scene generation did not finish within {timeout_seconds} seconds",
                    db,
                    expected=[JobStatus.PROCESSING]
                )
        except Exception as e:
            logger.error(f"Error failing stale job {job_id}: {e}", exc_info=True)
            db.rollback()
            continue

        if result.applied:
            failed[status] += 1
            stale_jobs_counter.labels(status=status).inc()
            logger.warning(f"Failed stale job {job_id} (was {status})")

    return failed


async def stale_job_sweeper_task() -> None:
    """Background task that periodically sweeps stale jobs"""
    while True:
        try:
            await asyncio.sleep(settings.STALE_JOB_SWEEP_INTERVAL)
            db = SessionLocal()
            try:
                failed = sweep_stale_jobs(db)
                if any(failed.values()):
                    logger.info(f"Stale job sweep failed {failed}")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Error in stale job sweeper: {e}", exc_info=True)
            await asyncio.sleep(60)
