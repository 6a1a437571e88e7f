"""Background worker that renders scenes for PROCESSING jobs

Consumes generate_scenes tasks queued by the orchestrator. Transient errors
are retried through the task queue; generation is idempotent per scene.

Run standalone with ``python -m promoreel.tasks.generation_worker``.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from promoreel.core.config import settings
from promoreel.core.exceptions import JobNotFoundError
from promoreel.db.session import SessionLocal
from promoreel.db.task_queue import (
    GENERATE_SCENES_TASK,
    dequeue_task,
    mark_task_completed,
    mark_task_failed,
    mark_task_processing,
    wait_for_retry_window,
)
from promoreel.services import orchestrator
from promoreel.services.scene_generation import HttpSceneGenerator, SceneGenerator

logger = logging.getLogger(__name__)


async def process_generation_task(task_data: Dict[str, Any], generator: SceneGenerator) -> None:
    """Process a single generation task (runs concurrently with other tasks)"""
    task_id = task_data.get("task_id")
    job_id = task_data.get("payload", {}).get("job_id")

    if not job_id:
        logger.error(f"Task {task_id} missing job_id in payload")
        mark_task_failed(task_id, "Missing job_id in task payload", retry=False)
        return

    mark_task_processing(task_id)
    db = SessionLocal()
    try:
        job = await orchestrator.run_generation(job_id, db, generator)
        mark_task_completed(task_id, {"job_id": job_id, "status": job.status if job else None})
    except JobNotFoundError as e:
        logger.warning(f"Task {task_id}: {e}")
        mark_task_failed(task_id, str(e), retry=False)
    except Exception as e:
        logger.error(f"Task {task_id} for job {job_id} failed: {e}", exc_info=True)
        db.rollback()
        mark_task_failed(task_id, str(e), retry=True)
    finally:
        db.close()


async def generation_worker_task(generator: Optional[SceneGenerator] = None) -> None:
    """Poll the generation queue and process tasks concurrently"""
    logger.info("Starting generation worker task")
    generator = generator or HttpSceneGenerator()
    slots = asyncio.Semaphore(max(1, settings.GENERATION_WORKER_CONCURRENCY))

    async def run_in_slot(task_data: Dict[str, Any]) -> None:
        try:
            await process_generation_task(task_data, generator)
        finally:
            slots.release()

    while True:
        try:
            await slots.acquire()
            handed_off = False
            try:
                task_data = await dequeue_task(GENERATE_SCENES_TASK, timeout=5)
                if task_data is None:
                    continue
                await wait_for_retry_window(task_data.get("task_id"))
                asyncio.create_task(run_in_slot(task_data))
                handed_off = True
            finally:
                if not handed_off:
                    slots.release()
        except Exception as e:
            logger.error(f"Error in generation worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)


def main() -> None:
    from promoreel.core.logging import setup_logging
    from promoreel.core.otel import initialize_otel, instrument_httpx, setup_otel_logging

    setup_logging()
    if initialize_otel("promoreel-generation-worker"):
        setup_otel_logging("promoreel-generation-worker")
        instrument_httpx()
    asyncio.run(generation_worker_task())


if __name__ == "__main__":
    main()
