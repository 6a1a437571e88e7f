"""Callback reconciler - applies merge outcomes to the job store

The single place where a STITCHING job becomes DONE or FAILED. The merge
callback endpoint, the merge worker's timeout path and the stale job sweep
all end up in ``apply_outcome``.
"""
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from promoreel.core.exceptions import CallbackPayloadError, CallbackUnauthorizedError, JobNotFoundError
from promoreel.core.logging import callback_logger
from promoreel.core.metrics import merge_callbacks_counter
from promoreel.core.security import verify_callback_secret
from promoreel.models.video_job import JobStatus
from promoreel.schemas.callback import MERGE_FAILED_FALLBACK_MESSAGE, MergeCallbackPayload
from promoreel.schemas.merge import MergeFailed, MergeOutcome, MergeSucceeded
from promoreel.services import job_store


@dataclass
class ReconcileResult:
    applied: bool
    status: Optional[str]


def apply_outcome(job_id: str, outcome: MergeOutcome, db: Session) -> ReconcileResult:
    """Apply a merge outcome to a job

    Only the first outcome for a STITCHING job changes anything. Outcomes for
    jobs in any other status are acknowledged and ignored.

    Raises:
        JobNotFoundError: If the job does not exist
    """
    job = job_store.get_job(job_id, db)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.STITCHING:
        callback_logger.info(f"Ignoring {outcome.kind} outcome for job {job_id} in status {job.status}")
        return ReconcileResult(applied=False, status=job.status)

    if isinstance(outcome, MergeSucceeded):
        result = job_store.complete_job(
            job_id,
            final_video_url=outcome.final_video_url,
            final_video_key=outcome.final_video_key,
            total_duration=outcome.total_duration,
            db=db
        )
    else:
        message = outcome.message or MERGE_FAILED_FALLBACK_MESSAGE
        if outcome.stage:
            callback_logger.warning(f"Merge for job {job_id} failed at {outcome.stage}: {message}")
        result = job_store.fail_job(
            job_id,
            job_store.FAILURE_STAGE_STITCHING,
            message,
            db,
            expected=[JobStatus.STITCHING]
        )

    status = result.job.status if result.job else None
    if result.applied:
        callback_logger.info(f"Job {job_id} reconciled to {status}")
    else:
        callback_logger.info(f"Job {job_id} was reconciled concurrently (now {status})")
    return ReconcileResult(applied=result.applied, status=status)


def parse_callback(body: Any) -> MergeCallbackPayload:
    """Authenticate and parse a raw callback body

    Raises:
        CallbackUnauthorizedError: Secret missing or wrong
        CallbackPayloadError: Body malformed or jobId missing
    """
    if not isinstance(body, dict):
        body = {}

    if not verify_callback_secret(body.get("secret")):
        raise CallbackUnauthorizedError("Invalid merge callback secret")

    try:
        payload = MergeCallbackPayload.model_validate(body)
    except ValidationError as e:
        raise CallbackPayloadError(f"Invalid callback payload: {e.errors()[0].get('msg', 'invalid')}")

    if not payload.job_id:
        raise CallbackPayloadError("jobId is required")
    return payload


def handle_merge_callback(body: Any, db: Session) -> ReconcileResult:
    """Authenticate, parse once into a MergeOutcome and apply it"""
    try:
        payload = parse_callback(body)
        result = apply_outcome(payload.job_id, payload.to_outcome(), db)
    except CallbackUnauthorizedError:
        merge_callbacks_counter.labels(result="unauthorized").inc()
        callback_logger.warning("Rejected merge callback with invalid secret")
        raise
    except CallbackPayloadError as e:
        merge_callbacks_counter.labels(result="bad_request").inc()
        callback_logger.warning(f"Rejected merge callback: {e}")
        raise
    except JobNotFoundError as e:
        merge_callbacks_counter.labels(result="not_found").inc()
        callback_logger.warning(f"Merge callback for unknown job {e.job_id}")
        raise

    merge_callbacks_counter.labels(result="applied" if result.applied else "ignored").inc()
    return result


def fail_stitching_job(job_id: str, message: str, db: Session, stage: Optional[str] = None) -> ReconcileResult:
    """Fail a STITCHING job through the same path a failure callback takes"""
    return apply_outcome(job_id, MergeFailed(stage=stage, message=message), db)
