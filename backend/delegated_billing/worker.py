import logging
import uuid
from typing import Any

from arq import cron
from arq.worker import func

from delegated_billing.core.config import settings
from delegated_billing.core.database import SessionLocal
from delegated_billing.core.logging import setup_logging
from delegated_billing.scheduler import LifecycleScheduler
from delegated_billing.services.delegation_redeemer import HttpDelegationRedeemer
from delegated_billing.services.payment_retry_service import PaymentRetryService
from delegated_billing.tasks import (
    DUNNING_RETRIES_JOB_ID,
    SCHEDULED_CHANGES_JOB_ID,
    redis_settings,
)

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "delegated_billing:lock:"

# arq must outlast the pass's own timeout so the pass can report unfinished stages
SCHEDULED_CHANGES_JOB_TIMEOUT = settings.SCHEDULER_PASS_TIMEOUT_SECONDS + 60
DUNNING_RETRIES_JOB_TIMEOUT = (
    settings.DUNNING_RETRY_BATCH_SIZE * settings.DELEGATION_REDEEM_TIMEOUT_SECONDS + 60
)


async def startup(ctx: dict[str, Any]) -> None:
    setup_logging()


async def acquire_run_lock(ctx: dict[str, Any], name: str, ttl: float) -> str | None:
    """Take the run lock for ``name``; returns the lock token, or None if held."""
    token = uuid.uuid4().hex
    acquired = await ctx["redis"].set(f"{LOCK_KEY_PREFIX}{name}", token, nx=True, ex=int(ttl))
    return token if acquired else None


async def release_run_lock(ctx: dict[str, Any], name: str, token: str) -> None:
    key = f"{LOCK_KEY_PREFIX}{name}"
    held = await ctx["redis"].get(key)
    if held is not None and (held.decode() if isinstance(held, bytes) else held) == token:
        await ctx["redis"].delete(key)


async def process_scheduled_changes_task(ctx: dict[str, Any]) -> int:
    """Background task: run one pass of scheduled cancellations, resumptions
    and dunning final actions.

    Runs every 5 minutes. A pass never starts while another one holds the lock.
    """
    token = await acquire_run_lock(ctx, SCHEDULED_CHANGES_JOB_ID, SCHEDULED_CHANGES_JOB_TIMEOUT)
    if token is None:
        logger.info("Previous scheduler pass still running, skipping")
        return 0
    try:
        scheduler = LifecycleScheduler(session_factory=SessionLocal)
        result = await scheduler.process_changes()
    finally:
        await release_run_lock(ctx, SCHEDULED_CHANGES_JOB_ID, token)
    processed = sum(stage.processed for stage in result.stages)
    if processed > 0:
        logger.info("Applied %d scheduled subscription changes (run %s)", processed, result.run_id)
    return processed


async def process_dunning_retries_task(ctx: dict[str, Any]) -> int:
    """Background task: retry payments for dunning campaigns whose next retry is due.

    Runs every 15 minutes.
    """
    token = await acquire_run_lock(ctx, DUNNING_RETRIES_JOB_ID, DUNNING_RETRIES_JOB_TIMEOUT)
    if token is None:
        logger.info("Previous dunning retry run still running, skipping")
        return 0
    db = SessionLocal()
    try:
        service = PaymentRetryService(db, HttpDelegationRedeemer())
        result = await service.process_due_retries()
        if result.attempted > 0:
            logger.info(
                "Dunning retries: %d attempted, %d recovered, %d rejected, %d transient, "
                "%d held, %d errors",
                result.attempted,
                result.recovered,
                result.rejected,
                result.transient_failures,
                result.held,
                result.errors,
            )
        return result.recovered
    finally:
        db.close()
        await release_run_lock(ctx, DUNNING_RETRIES_JOB_ID, token)


class WorkerSettings:
    functions = [
        func(
            process_scheduled_changes_task,
            timeout=SCHEDULED_CHANGES_JOB_TIMEOUT,
            keep_result=0,
        ),
        func(
            process_dunning_retries_task,
            timeout=DUNNING_RETRIES_JOB_TIMEOUT,
            keep_result=0,
        ),
    ]
    cron_jobs = [
        cron(
            process_scheduled_changes_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            timeout=SCHEDULED_CHANGES_JOB_TIMEOUT,
        ),
        cron(
            process_dunning_retries_task,
            minute={0, 15, 30, 45},
            timeout=DUNNING_RETRIES_JOB_TIMEOUT,
        ),
    ]
    on_startup = startup
    redis_settings = redis_settings
