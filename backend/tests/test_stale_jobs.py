"""Stale job sweep and generation worker tests"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from promoreel.db.task_queue import GENERATE_SCENES_TASK, enqueue_task, get_task_status
from promoreel.models.video_job import JobStatus, VideoJob
from promoreel.services import job_store
from promoreel.services.credit_ledger import SECONDARY_POOL
from promoreel.tasks.generation_worker import process_generation_task
from promoreel.tasks.stale_jobs import sweep_stale_jobs

from conftest import TestSessionLocal


def new_job(db_session, user, scene_count=2):
    return job_store.create_job(
        user=user,
        product_name="Yoga Mat",
        product_description="Non-slip mat for home workouts",
        target_length=15,
        scene_count=scene_count,
        credit_pool=SECONDARY_POOL,
        credit_cost=1,
        db=db_session,
    )


def processing_job(db_session, user):
    job = new_job(db_session, user)
    job_store.start_processing(job.id, db_session)
    return job


def stitching_job(db_session, user):
    job = processing_job(db_session, user)
    job_store.record_scene(job.id, 0, "scene-0", 5.0, db_session)
    job_store.record_scene(job.id, 1, "scene-1", 5.0, db_session)
    job_store.begin_stitching(job.id, db_session)
    return job


def age(db_session, job, hours=2):
    old = datetime.now(timezone.utc) - timedelta(hours=hours)
    db_session.query(VideoJob).filter(VideoJob.id == job.id).update({"updated_at": old})
    db_session.commit()


@pytest.mark.critical
class TestStaleJobSweep:
    def test_stale_stitching_job_failed(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        age(db_session, job)

        failed = sweep_stale_jobs(db_session, timeout_seconds=1800)

        assert failed[JobStatus.STITCHING] == 1
        db_session.expire_all()
        stored = job_store.get_job(job.id, db_session)
        assert stored.status == JobStatus.FAILED
        assert stored.failure_stage == job_store.FAILURE_STAGE_STITCHING
        assert stored.error_message == "Video merge did not finish within 1800 seconds"

    def test_stale_processing_job_failed(self, db_session, test_user):
        job = processing_job(db_session, test_user)
        age(db_session, job)

        failed = sweep_stale_jobs(db_session, timeout_seconds=1800)

        assert failed[JobStatus.PROCESSING] == 1
        db_session.expire_all()
        stored = job_store.get_job(job.id, db_session)
        assert stored.status == JobStatus.FAILED
        assert stored.failure_stage == job_store.FAILURE_STAGE_GENERATING

    def test_recent_and_pending_jobs_untouched(self, db_session, test_user):
        fresh = stitching_job(db_session, test_user)
        pending = new_job(db_session, test_user)
        age(db_session, pending)

        failed = sweep_stale_jobs(db_session, timeout_seconds=1800)

        assert failed == {JobStatus.STITCHING: 0, JobStatus.PROCESSING: 0}
        db_session.expire_all()
        assert job_store.get_job(fresh.id, db_session).status == JobStatus.STITCHING
        assert job_store.get_job(pending.id, db_session).status == JobStatus.PENDING

    def test_done_job_never_swept(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        job_store.complete_job(job.id, "https://storage.test/f.mp4", "f.mp4", 9.6, db_session)
        age(db_session, job)

        sweep_stale_jobs(db_session, timeout_seconds=1800)

        db_session.expire_all()
        stored = job_store.get_job(job.id, db_session)
        assert stored.status == JobStatus.DONE
        assert stored.error_message is None


class FailingGenerator:
    def __init__(self, error):
        self.error = error

    async def generate_scene(self, job, scene_index):
        raise self.error


@pytest.mark.high
class TestGenerationWorker:
    def run_task(self, db_session, job_id, generator):
        task_id = enqueue_task(GENERATE_SCENES_TASK, {"job_id": job_id})
        task_data = {"task_id": task_id, "payload": {"job_id": job_id}}
        with patch("promoreel.tasks.generation_worker.SessionLocal", TestSessionLocal):
            asyncio.run(process_generation_task(task_data, generator))
        return task_id

    def test_missing_job_fails_without_retry(self, db_session, mock_redis):
        task_id = self.run_task(db_session, "missing", FailingGenerator(RuntimeError("unused")))
        assert get_task_status(task_id)["status"] == "failed"

    def test_unexpected_error_is_retried(self, db_session, mock_redis, test_user):
        job_id = processing_job(db_session, test_user).id
        task_id = self.run_task(db_session, job_id, FailingGenerator(RuntimeError("connection reset")))

        assert get_task_status(task_id)["status"] == "retrying"
        db_session.expire_all()
        assert job_store.get_job(job_id, db_session).status == JobStatus.PROCESSING

    def test_missing_job_id_in_payload(self, mock_redis):
        task_id = enqueue_task(GENERATE_SCENES_TASK, {})
        asyncio.run(process_generation_task({"task_id": task_id, "payload": {}}, FailingGenerator(None)))
        assert get_task_status(task_id)["status"] == "failed"
