"""Background worker that runs merge_video tasks from the Redis queue

Each task runs the ffmpeg pipeline in a thread under a wall-clock budget and
always reports exactly one outcome to the merge callback. The worker never
writes job state itself.

Run standalone with ``python -m promoreel.tasks.merge_worker``.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from promoreel.core.config import settings
from promoreel.core.logging import merge_logger
from promoreel.db.task_queue import (
    MERGE_VIDEO_TASK,
    cleanup_stale_tasks,
    dequeue_task,
    mark_task_completed,
    mark_task_failed,
    mark_task_processing,
    wait_for_retry_window,
)
from promoreel.schemas.merge import MergeFailed, MergeOutcome, MergeRequest
from promoreel.services.merge.callback_client import MergeCallbackClient
from promoreel.services.merge.pipeline import MergeWorker

logger = logging.getLogger(__name__)


async def run_merge_with_timeout(
    worker: MergeWorker,
    request: MergeRequest,
    timeout: float,
    abandoned: Optional[List[asyncio.Future]] = None
) -> MergeOutcome:
    """Run one merge, turning a blown budget into a failure outcome

    The ffmpeg thread cannot be interrupted. A merge past its budget keeps
    running and its late result is discarded; its future is appended to
    ``abandoned`` so the caller can wait for the thread to exit.
    """
    merge = asyncio.ensure_future(asyncio.to_thread(worker.run, request))
    try:
        return await asyncio.wait_for(asyncio.shield(merge), timeout=timeout)
    except asyncio.TimeoutError:
        merge_logger.error(f"Merge for job {request.job_id} exceeded {timeout:.0f}s")
        if abandoned is not None:
            abandoned.append(merge)
        return MergeFailed(stage=None, message=f"Merge timed out after {timeout:.0f} seconds")


async def process_merge_task(
    task_data: Dict[str, Any],
    worker: MergeWorker,
    callback_client: MergeCallbackClient,
    timeout: Optional[float] = None
) -> None:
    """Process a single merge task (runs concurrently with other tasks)

    Returns only once the merge thread has exited, so a worker slot is never
    freed while a timed-out ffmpeg run is still going.
    """
    task_id = task_data.get("task_id")
    if timeout is None:
        timeout = settings.MERGE_TIMEOUT_SECONDS

    try:
        request = MergeRequest.model_validate(task_data.get("payload", {}))
    except ValidationError as e:
        logger.error(f"Task {task_id} has an invalid merge payload: {e}")
        mark_task_failed(task_id, f"Invalid merge payload: {e}", retry=False)
        return

    mark_task_processing(task_id)
    abandoned: List[asyncio.Future] = []
    try:
        outcome = await run_merge_with_timeout(worker, request, timeout, abandoned)
        reported = await asyncio.to_thread(callback_client.report, request.job_id, outcome)
    except Exception as e:
        logger.error(f"Task {task_id} for job {request.job_id} failed: {e}", exc_info=True)
        mark_task_failed(task_id, str(e), retry=False)
        await _wait_for_abandoned(abandoned)
        return

    if reported:
        mark_task_completed(task_id, {"job_id": request.job_id, "outcome": outcome.kind})
    else:
        mark_task_failed(task_id, "Merge outcome could not be reported", retry=False)
    await _wait_for_abandoned(abandoned)


async def _wait_for_abandoned(abandoned: List[asyncio.Future]) -> None:
    for merge in abandoned:
        late = await merge
        merge_logger.info(f"Timed-out merge finished late with a discarded {late.kind} outcome")


async def merge_worker_task(
    worker: Optional[MergeWorker] = None,
    callback_client: Optional[MergeCallbackClient] = None
) -> None:
    """Poll the merge queue, running up to MERGE_WORKER_CONCURRENCY merges at once"""
    logger.info("Starting merge worker task")
    if worker is None:
        from promoreel.services.storage.s3_service import get_storage_service
        worker = MergeWorker(storage=get_storage_service())
    callback_client = callback_client or MergeCallbackClient()
    slots = asyncio.Semaphore(max(1, settings.MERGE_WORKER_CONCURRENCY))

    async def run_in_slot(task_data: Dict[str, Any]) -> None:
        try:
            await process_merge_task(task_data, worker, callback_client)
        finally:
            slots.release()

    while True:
        try:
            cleanup_stale_tasks(timeout_seconds=settings.MERGE_TIMEOUT_SECONDS * 2)

            await slots.acquire()
            handed_off = False
            try:
                task_data = await dequeue_task(MERGE_VIDEO_TASK, timeout=5)
                if task_data is None:
                    continue
                await wait_for_retry_window(task_data.get("task_id"))
                asyncio.create_task(run_in_slot(task_data))
                handed_off = True
            finally:
                if not handed_off:
                    slots.release()
        except Exception as e:
            logger.error(f"Error in merge worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)


def main() -> None:
    from promoreel.core.logging import setup_logging
    from promoreel.core.otel import initialize_otel, instrument_httpx, setup_otel_logging

    setup_logging()
    if initialize_otel("promoreel-merge-worker"):
        setup_otel_logging("promoreel-merge-worker")
        instrument_httpx()
    asyncio.run(merge_worker_task())


if __name__ == "__main__":
    main()
