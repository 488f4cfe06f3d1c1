from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from delegated_billing.core.config import settings

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)

# Fixed ids so arq keeps at most one on-demand run of each job queued
SCHEDULED_CHANGES_JOB_ID = "process_scheduled_changes_task"
DUNNING_RETRIES_JOB_ID = "process_dunning_retries_task"


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job | None:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task

    Returns:
        Job object from arq, or None if a job with the same _job_id exists
    """
    pool = await get_redis_pool()
    try:
        return await pool.enqueue_job(task_name, *args, **kwargs)
    finally:
        await pool.close()


async def enqueue_scheduled_changes() -> Job | None:
    """Enqueue an out-of-band scheduler pass.

    Returns None if one is already queued or running.
    """
    return await enqueue_task("process_scheduled_changes_task", _job_id=SCHEDULED_CHANGES_JOB_ID)


async def enqueue_dunning_retries() -> Job | None:
    """Enqueue a run of due dunning payment retries.

    Returns None if one is already queued or running.
    """
    return await enqueue_task("process_dunning_retries_task", _job_id=DUNNING_RETRIES_JOB_ID)
