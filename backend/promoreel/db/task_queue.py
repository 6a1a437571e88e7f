"""Redis-based task queue for the generation and merge workers

Tasks live in Redis lists (one per task type) with a metadata hash per task.
Delivery is at-least-once: a task may be dequeued again after a crash or a
retry, so every handler must be idempotent against the job's current status.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from promoreel.db.redis import get_async_redis_client, get_redis_client

logger = logging.getLogger(__name__)

# Task types
GENERATE_SCENES_TASK = "generate_scenes"
MERGE_VIDEO_TASK = "merge_video"

# Redis key prefixes
QUEUE_KEY_PREFIX = "task:queue:"
META_KEY_PREFIX = "task:meta:"
PROCESSING_SET_KEY = "task:processing"

# Metadata of finished tasks is kept for a day
TASK_META_TTL = 24 * 60 * 60

# Cap for exponential retry backoff
MAX_RETRY_DELAY_SECONDS = 300


def _meta_key(task_id: str) -> str:
    return f"{META_KEY_PREFIX}{task_id}"


def enqueue_task(
    task_type: str,
    payload: Dict[str, Any],
    retry_count: int = 0,
    max_retries: int = 3,
    retry_after: Optional[datetime] = None
) -> str:
    """Push a task onto its queue

    Args:
        task_type: GENERATE_SCENES_TASK or MERGE_VIDEO_TASK
        payload: JSON-serializable task payload (always carries 'job_id')
        retry_count: Current retry attempt (0 for new tasks)
        max_retries: Maximum number of automatic retries
        retry_after: Earliest time the task may be processed

    Returns:
        task_id: Unique task identifier
    """
    task_id = str(uuid.uuid4())
    created_at = datetime.now(timezone.utc).isoformat()

    meta = {
        "task_id": task_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "retry_count": str(retry_count),
        "max_retries": str(max_retries),
        "created_at": created_at,
        "status": "pending"
    }
    if retry_after is not None:
        meta["retry_after"] = retry_after.isoformat()

    client = get_redis_client()
    client.hset(_meta_key(task_id), mapping=meta)
    client.expire(_meta_key(task_id), TASK_META_TTL)

    client.lpush(f"{QUEUE_KEY_PREFIX}{task_type}", json.dumps({
        "task_id": task_id,
        "task_type": task_type,
        "payload": payload,
        "retry_count": retry_count,
        "max_retries": max_retries,
        "created_at": created_at
    }))

    logger.info(f"Enqueued task {task_id} of type {task_type} (job={payload.get('job_id')}, retry_count={retry_count})")
    return task_id


async def dequeue_task(task_type: str, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Pop the next task of a type, blocking up to ``timeout`` seconds

    Returns:
        Task dict, or None on timeout or Redis error
    """
    client = get_async_redis_client()
    if client is None:
        logger.error("Async Redis client not available")
        return None

    try:
        result = await client.brpop(f"{QUEUE_KEY_PREFIX}{task_type}", timeout=timeout)
        if result is None:
            return None
        _, task_json = result
        return json.loads(task_json)
    except Exception as e:
        logger.error(f"Error dequeuing {task_type} task: {e}", exc_info=True)
        return None


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    """Get task metadata with payload and counters decoded"""
    meta = get_redis_client().hgetall(_meta_key(task_id))
    if not meta:
        return None

    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    for field in ("retry_count", "max_retries"):
        if field in meta:
            meta[field] = int(meta[field])

    return meta


async def wait_for_retry_window(task_id: str) -> None:
    """Sleep until a retried task's backoff has elapsed"""
    meta = get_task_status(task_id)
    retry_after_str = meta.get("retry_after") if meta else None
    if not retry_after_str:
        return

    try:
        retry_after = datetime.fromisoformat(retry_after_str.replace('Z', '+00:00'))
    except (ValueError, TypeError) as e:
        logger.warning(f"Error parsing retry_after for task {task_id}: {e}")
        return

    delay_seconds = (retry_after - datetime.now(timezone.utc)).total_seconds()
    if delay_seconds > 0:
        logger.info(f"Task {task_id} waiting {delay_seconds:.0f}s before retry")
        await asyncio.sleep(delay_seconds)


def mark_task_processing(task_id: str) -> None:
    """Mark task as processing"""
    client = get_redis_client()
    client.hset(_meta_key(task_id), mapping={
        "status": "processing",
        "started_at": datetime.now(timezone.utc).isoformat()
    })
    client.sadd(PROCESSING_SET_KEY, task_id)
    logger.debug(f"Marked task {task_id} as processing")


def mark_task_completed(task_id: str, result: Optional[Dict[str, Any]] = None) -> None:
    """Mark task as completed, storing an optional result"""
    client = get_redis_client()
    client.hset(_meta_key(task_id), mapping={
        "status": "completed",
        "completed_at": datetime.now(timezone.utc).isoformat()
    })
    if result:
        client.hset(_meta_key(task_id), "result", json.dumps(result))
    client.srem(PROCESSING_SET_KEY, task_id)
    logger.info(f"Marked task {task_id} as completed")


def mark_task_failed(task_id: str, error: str, retry: bool = True) -> Optional[str]:
    """Mark task as failed and optionally schedule a retry with exponential backoff

    Args:
        task_id: Task identifier
        error: Error message
        retry: Whether an automatic retry is allowed

    Returns:
        New task_id if a retry was scheduled, None otherwise
    """
    client = get_redis_client()
    meta = client.hgetall(_meta_key(task_id))
    if not meta:
        logger.warning(f"Task {task_id} metadata not found")
        return None

    payload_json = meta.get("payload")
    if not payload_json:
        logger.error(f"Task {task_id} missing payload")
        return None

    retry_count = int(meta.get("retry_count", "0"))
    max_retries = int(meta.get("max_retries", "3"))
    client.srem(PROCESSING_SET_KEY, task_id)

    if retry and retry_count < max_retries:
        new_retry_count = retry_count + 1
        delay_seconds = min(MAX_RETRY_DELAY_SECONDS, 2 ** new_retry_count)
        client.hset(_meta_key(task_id), mapping={
            "status": "retrying",
            "error": error,
            "retry_delay_seconds": str(delay_seconds)
        })
        logger.info(
            f"Task {task_id} failed (attempt {retry_count + 1}/{max_retries + 1}), "
            f"scheduling retry in {delay_seconds}s: {error}"
        )
        return enqueue_task(
            task_type=meta.get("task_type"),
            payload=json.loads(payload_json),
            retry_count=new_retry_count,
            max_retries=max_retries,
            retry_after=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        )

    client.hset(_meta_key(task_id), mapping={
        "status": "failed",
        "error": error,
        "failed_at": datetime.now(timezone.utc).isoformat()
    })
    logger.warning(f"Task {task_id} failed permanently after {retry_count + 1} attempts: {error}")
    return None


def get_processing_tasks() -> List[str]:
    """Get ids of tasks currently being processed"""
    return list(get_redis_client().smembers(PROCESSING_SET_KEY))


def cleanup_stale_tasks(timeout_seconds: int = 3600) -> int:
    """Drop tasks stuck in processing (crashed worker) from the processing set

    The job each task belonged to is terminated separately by the stale job sweep.

    Returns:
        Number of tasks cleaned up
    """
    client = get_redis_client()
    cleaned = 0

    for task_id in get_processing_tasks():
        started_at_str = client.hget(_meta_key(task_id), "started_at")
        if not started_at_str:
            continue
        try:
            started_at = datetime.fromisoformat(started_at_str.replace('Z', '+00:00'))
        except (ValueError, TypeError) as e:
            logger.warning(f"Error parsing started_at for task {task_id}: {e}")
            client.srem(PROCESSING_SET_KEY, task_id)
            cleaned += 1
            continue

        elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()
        if elapsed > timeout_seconds:
            logger.warning(f"Cleaning up stale task {task_id} (processing for {elapsed:.0f}s)")
            client.srem(PROCESSING_SET_KEY, task_id)
            client.hset(_meta_key(task_id), mapping={
                "status": "failed",
                "error": f"Task timeout after {elapsed:.0f} seconds"
            })
            cleaned += 1

    return cleaned
