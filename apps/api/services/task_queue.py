"""Durable image job queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


IMAGE_QUEUE_NAME = "image_tasks"
IMAGE_JOB_TIMEOUT_SECONDS = 1800


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_image_queue() -> Queue:
    """Return the configured image generation queue."""
    return Queue(
        name=IMAGE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=IMAGE_JOB_TIMEOUT_SECONDS,
    )


def enqueue_image_task(task_id: str) -> Job:
    """Enqueue an image generation job with retry/timeouts for durability."""
    queue = get_image_queue()
    return queue.enqueue(
        "services.image_generation.process_image_task_job",
        task_id,
        job_id=f"image:{task_id}",
        retry=Retry(max=2, interval=[15, 60]),
        job_timeout=IMAGE_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
