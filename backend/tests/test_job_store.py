"""Job store state machine tests"""
import pytest
from datetime import datetime, timedelta, timezone

from promoreel.models.credit_transaction import CreditTransaction
from promoreel.models.generated_video import GeneratedVideo
from promoreel.models.video_job import JobStatus, VideoJob
from promoreel.services import job_store
from promoreel.services.credit_ledger import SECONDARY_POOL


def new_job(db_session, user, scene_count=2, cost=1):
    return job_store.create_job(
        user=user,
        product_name="Trail Shoe",
        product_description="Lightweight shoe for muddy trails",
        target_length=15,
        scene_count=scene_count,
        credit_pool=SECONDARY_POOL,
        credit_cost=cost,
        db=db_session,
    )


def stitching_job(db_session, user, durations=(10.0, 10.0)):
    job = new_job(db_session, user, scene_count=len(durations))
    job_store.start_processing(job.id, db_session)
    for index, duration in enumerate(durations):
        job_store.record_scene(job.id, index, f"video-jobs/{job.id}/scenes/scene_{index}_raw.mp4", duration, db_session)
    result = job_store.begin_stitching(job.id, db_session)
    assert result.applied
    return result.job


@pytest.mark.critical
class TestTransitions:
    """Status changes are compare-and-swap"""

    def test_create_job_is_pending(self, db_session, test_user):
        job = new_job(db_session, test_user)
        assert job.status == JobStatus.PENDING
        assert job.user_email == test_user.email
        assert len(job.id) == 32

    def test_start_processing_once(self, db_session, test_user):
        job = new_job(db_session, test_user)
        first = job_store.start_processing(job.id, db_session)
        second = job_store.start_processing(job.id, db_session)
        assert first.applied is True
        assert second.applied is False
        assert second.job.status == JobStatus.PROCESSING

    def test_transition_from_wrong_status_is_rejected(self, db_session, test_user):
        job = new_job(db_session, test_user)
        assert job_store.transition(job.id, [JobStatus.STITCHING], JobStatus.DONE, db_session) is False
        db_session.refresh(job)
        assert job.status == JobStatus.PENDING

    def test_transition_on_missing_job(self, db_session):
        assert job_store.transition("missing", [JobStatus.PENDING], JobStatus.PROCESSING, db_session) is False


@pytest.mark.critical
class TestScenes:
    """Scene recording"""

    def test_scene_ignored_unless_processing(self, db_session, test_user):
        job = new_job(db_session, test_user)
        assert job_store.record_scene(job.id, 0, "key", 5.0, db_session) is None
        assert job_store.get_scenes(job.id, db_session) == []

    def test_duplicate_scene_index_ignored(self, db_session, test_user):
        job = new_job(db_session, test_user)
        job_store.start_processing(job.id, db_session)
        assert job_store.record_scene(job.id, 0, "first", 5.0, db_session) is not None
        assert job_store.record_scene(job.id, 0, "second", 6.0, db_session) is None

        scenes = job_store.get_scenes(job.id, db_session)
        assert [s.location for s in scenes] == ["first"]

    def test_scene_index_out_of_range(self, db_session, test_user):
        job = new_job(db_session, test_user, scene_count=2)
        job_store.start_processing(job.id, db_session)
        with pytest.raises(ValueError):
            job_store.record_scene(job.id, 2, "key", 5.0, db_session)

    def test_scenes_returned_in_index_order(self, db_session, test_user):
        job = new_job(db_session, test_user, scene_count=3)
        job_store.start_processing(job.id, db_session)
        for index in (2, 0, 1):
            job_store.record_scene(job.id, index, f"scene-{index}", 5.0, db_session)
        assert [s.scene_index for s in job_store.get_scenes(job.id, db_session)] == [0, 1, 2]

    def test_stitching_requires_every_scene(self, db_session, test_user):
        job = new_job(db_session, test_user, scene_count=2)
        job_store.start_processing(job.id, db_session)
        job_store.record_scene(job.id, 0, "scene-0", 5.0, db_session)

        result = job_store.begin_stitching(job.id, db_session)
        assert result.applied is False
        assert result.job.status == JobStatus.PROCESSING

        job_store.record_scene(job.id, 1, "scene-1", 5.0, db_session)
        assert job_store.begin_stitching(job.id, db_session).applied is True
        assert job_store.begin_stitching(job.id, db_session).applied is False


@pytest.mark.critical
class TestCompletion:
    """DONE is written together with the video and the charge"""

    def test_complete_job_writes_video_and_charge(self, db_session, test_user):
        job = stitching_job(db_session, test_user)

        result = job_store.complete_job(job.id, "https://storage.test/final.mp4", "final.mp4", 18.5, db_session)

        assert result.applied is True
        assert result.job.status == JobStatus.DONE
        assert result.job.total_duration == 19
        assert result.job.completed_at is not None

        video = db_session.query(GeneratedVideo).filter(GeneratedVideo.video_job_id == job.id).one()
        assert video.duration == 19
        assert video.video_url == "https://storage.test/final.mp4"

        db_session.refresh(test_user)
        assert test_user.credits_used_veo == 1

    def test_second_completion_changes_nothing(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        job_store.complete_job(job.id, "https://storage.test/a.mp4", "a.mp4", 20, db_session)
        second = job_store.complete_job(job.id, "https://storage.test/b.mp4", "b.mp4", 30, db_session)

        assert second.applied is False
        assert second.job.final_video_url == "https://storage.test/a.mp4"
        assert db_session.query(GeneratedVideo).count() == 1
        assert db_session.query(CreditTransaction).filter(CreditTransaction.video_job_id == job.id).count() == 1
        db_session.refresh(test_user)
        assert test_user.credits_used_veo == 1

    def test_complete_requires_location(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        with pytest.raises(ValueError):
            job_store.complete_job(job.id, "", None, 20, db_session)

    def test_cannot_complete_processing_job(self, db_session, test_user):
        job = new_job(db_session, test_user)
        job_store.start_processing(job.id, db_session)
        result = job_store.complete_job(job.id, "https://storage.test/x.mp4", "x.mp4", 10, db_session)
        assert result.applied is False
        assert db_session.query(GeneratedVideo).count() == 0


@pytest.mark.critical
class TestFailure:
    """FAILED is terminal"""

    def test_fail_job_records_stage_and_message(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        result = job_store.fail_job(job.id, job_store.FAILURE_STAGE_STITCHING, "ffmpeg crashed", db_session)
        assert result.applied is True
        assert result.job.status == JobStatus.FAILED
        assert result.job.failure_stage == "STITCHING"
        assert result.job.error_message == "ffmpeg crashed"
        assert result.job.failed_at is not None

    def test_terminal_job_cannot_fail_or_complete(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        job_store.complete_job(job.id, "https://storage.test/a.mp4", "a.mp4", 20, db_session)

        failed = job_store.fail_job(job.id, job_store.FAILURE_STAGE_STITCHING, "late failure", db_session)
        assert failed.applied is False
        assert failed.job.status == JobStatus.DONE
        assert failed.job.error_message is None

    def test_failed_job_cannot_complete(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        job_store.fail_job(job.id, job_store.FAILURE_STAGE_STITCHING, "boom", db_session)
        result = job_store.complete_job(job.id, "https://storage.test/a.mp4", "a.mp4", 20, db_session)
        assert result.applied is False
        assert result.job.status == JobStatus.FAILED
        db_session.refresh(test_user)
        assert test_user.credits_used_veo == 0

    def test_fail_with_expected_status_guard(self, db_session, test_user):
        job = new_job(db_session, test_user)
        result = job_store.fail_job(
            job.id, job_store.FAILURE_STAGE_GENERATING, "boom", db_session, expected=[JobStatus.PROCESSING]
        )
        assert result.applied is False
        assert result.job.status == JobStatus.PENDING


@pytest.mark.high
class TestQueries:
    def test_list_user_jobs_paginates_and_filters(self, db_session, test_user, test_user_2):
        for _ in range(3):
            new_job(db_session, test_user)
        started = new_job(db_session, test_user)
        job_store.start_processing(started.id, db_session)
        new_job(db_session, test_user_2)

        jobs, total = job_store.list_user_jobs(test_user.id, db_session, page=1, limit=2)
        assert total == 4
        assert len(jobs) == 2

        processing, total = job_store.list_user_jobs(test_user.id, db_session, status=JobStatus.PROCESSING)
        assert total == 1
        assert processing[0].id == started.id

    def test_limit_is_capped(self, db_session, test_user):
        new_job(db_session, test_user)
        jobs, _ = job_store.list_user_jobs(test_user.id, db_session, limit=500)
        assert len(jobs) == 1

    def test_get_user_job_checks_owner(self, db_session, test_user, test_user_2):
        job = new_job(db_session, test_user)
        assert job_store.get_user_job(job.id, test_user.id, db_session) is not None
        assert job_store.get_user_job(job.id, test_user_2.id, db_session) is None

    def test_find_stale_jobs(self, db_session, test_user):
        job = stitching_job(db_session, test_user)
        old = datetime.now(timezone.utc) - timedelta(hours=2)
        db_session.query(VideoJob).filter(VideoJob.id == job.id).update({"updated_at": old})
        db_session.commit()

        cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
        stale = job_store.find_stale_jobs([JobStatus.STITCHING], cutoff, db_session)
        assert [j.id for j in stale] == [job.id]
        assert job_store.find_stale_jobs([JobStatus.PROCESSING], cutoff, db_session) == []
