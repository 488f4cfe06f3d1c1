"""Periodic driver for subscription lifecycle transitions.

Run as ``python -m delegated_billing.scheduler [--interval SECONDS] [--once]``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from delegated_billing.core.config import settings
from delegated_billing.core.database import SessionLocal
from delegated_billing.core.logging import bind_logger, setup_logging
from delegated_billing.schemas.scheduler import PassResult, StageResult
from delegated_billing.services.dunning_service import STAGE_FINAL_ACTIONS, DunningService
from delegated_billing.services.email_service import EmailService
from delegated_billing.services.notification_gateway import NotificationGateway
from delegated_billing.services.subscription_lifecycle import (
    STAGE_CANCELLATIONS,
    STAGE_RESUMPTIONS,
    SubscriptionLifecycleService,
)

logger = logging.getLogger(__name__)

STAGES = (STAGE_CANCELLATIONS, STAGE_RESUMPTIONS, STAGE_FINAL_ACTIONS)

StageRunner = Callable[[datetime], Awaitable[StageResult]]


class LifecycleScheduler:
    """Runs cancellations, resumptions and dunning final actions on a fixed interval.

    A single background task runs passes one after another. ``stop()`` is only
    observed between passes; a pass in flight runs to completion or to its
    timeout.
    """

    def __init__(
        self,
        interval_seconds: float | None = None,
        pass_timeout_seconds: float | None = None,
        session_factory: Callable[[], Session] | None = None,
        email_service: EmailService | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,  # type: ignore[type-arg]
    ):
        interval = (
            settings.SCHEDULER_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        pass_timeout = (
            settings.SCHEDULER_PASS_TIMEOUT_SECONDS
            if pass_timeout_seconds is None
            else pass_timeout_seconds
        )
        if interval <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        if pass_timeout <= 0:
            raise ValueError("pass_timeout_seconds must be greater than zero")

        self.interval_seconds = float(interval)
        self.pass_timeout_seconds = float(pass_timeout)
        self.session_factory = session_factory or SessionLocal
        self.email_service = email_service or EmailService()
        self.logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Launch the background worker. Must be called from a running event loop."""
        if self._task is not None:
            raise RuntimeError("Scheduler has already been started")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="lifecycle-scheduler")
        self.logger.info(
            "Scheduler started (interval=%.0fs, pass timeout=%.0fs)",
            self.interval_seconds,
            self.pass_timeout_seconds,
        )
        return self._task

    async def stop(self) -> None:
        """Signal shutdown and wait for the in-flight pass to finish."""
        if self._task is None or self._stop_event is None:
            return
        self._stop_event.set()
        await self._task
        self.logger.info("Scheduler stopped")

    async def _run(self) -> None:
        assert self._stop_event is not None
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stop_event.is_set():
            try:
                await self.process_changes()
            except Exception:
                self.logger.exception("Scheduler pass crashed")

            next_tick += self.interval_seconds
            now = loop.time()
            if next_tick <= now:
                # Drop ticks missed while the pass was running
                missed = int((now - next_tick) // self.interval_seconds) + 1
                next_tick += missed * self.interval_seconds
                self.logger.warning("Pass overran the interval, skipped %d tick(s)", missed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except TimeoutError:
                pass

    async def process_changes(self, now: datetime | None = None) -> PassResult:
        """Run one pass over all stages, bounded by the pass timeout."""
        run_id = uuid.uuid4().hex[:12]
        now = now or datetime.now(UTC)
        pass_logger = bind_logger(self.logger, run_id=run_id)
        result = PassResult(run_id=run_id, started_at=now)
        started = time.monotonic()

        pass_logger.info("Processing scheduled subscription changes")
        db = self.session_factory()
        try:
            await asyncio.wait_for(
                self._run_stages(db, now, pass_logger, result),
                timeout=self.pass_timeout_seconds,
            )
        except TimeoutError:
            result.timed_out = True
            done = {stage.stage for stage in result.stages}
            for name in STAGES:
                if name not in done:
                    result.stages.append(StageResult(stage=name, error="skipped: pass timed out"))
            pass_logger.error(
                "Pass exceeded its %.0fs timeout; unfinished stages were abandoned",
                self.pass_timeout_seconds,
            )
        finally:
            db.close()

        result.duration_seconds = time.monotonic() - started
        pass_logger.info(
            "Pass finished in %.2fs: %s",
            result.duration_seconds,
            ", ".join(
                f"{stage.stage}={stage.processed} ok/{stage.failed} failed/{stage.skipped} skipped"
                for stage in result.stages
            ),
        )
        return result

    async def _run_stages(
        self,
        db: Session,
        now: datetime,
        pass_logger: logging.LoggerAdapter,  # type: ignore[type-arg]
        result: PassResult,
    ) -> None:
        for name in STAGES:
            stage_logger = bind_logger(pass_logger, stage=name)
            position = len(result.stages)
            placeholder = StageResult(stage=name, error="abandoned: pass timed out")
            result.stages.append(placeholder)
            try:
                outcome = await self._stage_runner(name, db, stage_logger)(now)
            except Exception as exc:
                db.rollback()
                stage_logger.exception("Stage %s failed", name)
                placeholder.error = f"{type(exc).__name__}: {exc}"
                continue
            result.stages[position] = outcome

    def _stage_runner(
        self,
        name: str,
        db: Session,
        stage_logger: logging.LoggerAdapter,  # type: ignore[type-arg]
    ) -> StageRunner:
        gateway = NotificationGateway(self.email_service, logger=stage_logger)
        if name == STAGE_CANCELLATIONS:
            return SubscriptionLifecycleService(db, gateway, logger=stage_logger).process_cancellations
        if name == STAGE_RESUMPTIONS:
            return SubscriptionLifecycleService(db, gateway, logger=stage_logger).process_resumptions
        if name == STAGE_FINAL_ACTIONS:
            return DunningService(db, gateway, logger=stage_logger).process_final_actions
        raise ValueError(f"Unknown stage: {name}")


async def _serve(scheduler: LifecycleScheduler) -> None:
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    scheduler.start()
    await shutdown.wait()
    logger.info("Shutdown signal received, waiting for the current pass to finish")
    await scheduler.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m delegated_billing.scheduler",
        description="Process scheduled subscription cancellations, resumptions "
        "and dunning final actions.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.SCHEDULER_INTERVAL_SECONDS,
        help="seconds between passes (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.SCHEDULER_PASS_TIMEOUT_SECONDS,
        help="upper bound for a single pass in seconds (default: %(default)s)",
    )
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        scheduler = LifecycleScheduler(
            interval_seconds=args.interval, pass_timeout_seconds=args.timeout
        )
    except ValueError as exc:
        parser.error(str(exc))

    if args.once:
        result = asyncio.run(scheduler.process_changes())
        return 0 if result.ok else 1

    asyncio.run(_serve(scheduler))
    return 0


if __name__ == "__main__":
    sys.exit(main())
