"""Automation Scheduler - Periodic drip processing and flow resumption

Supports multi-server deployment: every server runs its own scheduler and
drip runs are leased in MongoDB before they are processed, so each due
step is sent by exactly one worker.

Handles:
- Drip runs whose next step is due (bounded concurrency per cycle)
- Flow instances whose delay or reply timeout has elapsed
"""
import asyncio
import socket
import os
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.models import DripRun
from ..engine.drip_engine import DripEngine
from ..engine.flow_engine import FlowEngine
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id, generate_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class AutomationScheduler:
    """
    APScheduler wrapper driving the pull-based engines.

    Responsibilities:
    - Lease, process and release due drip runs
    - Resume waiting flow instances past their deadline
    """

    def __init__(self, drip_engine: DripEngine, flow_engine: FlowEngine):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.drip_engine = drip_engine
        self.flow_engine = flow_engine
        self._is_running = False

        # Unique server ID used as the lease owner prefix
        self._server_id = self._generate_server_id()
        self._process_count = 0

    def _generate_server_id(self) -> str:
        """Generate unique server identifier for run leases"""
        hostname = socket.gethostname()
        pid = os.getpid()
        unique = generate_id()[:8]
        return f"{hostname}-{pid}-{unique}"

    @property
    def server_id(self) -> str:
        return self._server_id

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self.process_drip_runs,
            trigger=IntervalTrigger(seconds=settings.drip_poll_interval_seconds),
            id="process_drip_runs",
            name="Process due drip runs",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.add_job(
            self.resume_flow_instances,
            trigger=IntervalTrigger(seconds=settings.flow_resume_interval_seconds),
            id="resume_flow_instances",
            name="Resume waiting flow instances",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={
                "server_id": self._server_id,
                "drip_interval": settings.drip_poll_interval_seconds,
                "flow_interval": settings.flow_resume_interval_seconds,
                "lease_seconds": settings.drip_lease_seconds
            }
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Automation scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    async def process_drip_runs(self) -> dict:
        """
        Process every due drip run once.

        Each run is leased before processing so only one server handles
        it; at most drip_worker_concurrency runs are in flight at a time.
        """
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        start_time = utc_now()
        counts = {"processed": 0, "failed": 0, "skipped": 0}

        try:
            runs = self.drip_engine.get_due_runs(settings.drip_batch_size)
            if not runs:
                return counts

            logger.info(
                f"Found {len(runs)} due drip runs",
                extra={"count": len(runs), "server_id": self._server_id}
            )

            semaphore = asyncio.Semaphore(settings.drip_worker_concurrency)

            async def bounded_run(run: DripRun) -> None:
                async with semaphore:
                    await self._process_one(run, counts)

            await asyncio.gather(*(bounded_run(run) for run in runs))

            duration_ms = (utc_now() - start_time).total_seconds() * 1000
            if counts["processed"] > 0 or counts["failed"] > 0:
                logger.info(
                    f"Drip cycle complete: {counts['processed']} processed, "
                    f"{counts['failed']} failed, {counts['skipped']} skipped",
                    extra={
                        **counts,
                        "duration_ms": round(duration_ms, 2),
                        "server_id": self._server_id,
                        "total_processed": self._process_count
                    }
                )
        except Exception as e:
            logger.error(
                f"Error in drip processing job: {e}",
                extra={"error_type": type(e).__name__, "error": str(e)}
            )
        return counts

    async def _process_one(self, run: DripRun, counts: dict) -> None:
        lease_owner = f"{self._server_id}-{generate_id()[:8]}"
        claimed = self.drip_engine.claim_run(run.run_id, lease_owner)
        if claimed is None:
            # Leased by another worker
            counts["skipped"] += 1
            return

        try:
            await self.drip_engine.process_run(claimed)
            counts["processed"] += 1
            self._process_count += 1
        except Exception as e:
            counts["failed"] += 1
            logger.error(
                f"Error processing drip run {run.run_id}: {e}",
                extra={
                    "run_id": run.run_id,
                    "campaign_id": run.campaign_id,
                    "error_type": type(e).__name__
                }
            )
        finally:
            self.drip_engine.release_run(run.run_id, lease_owner)

    async def resume_flow_instances(self) -> int:
        """Resume flow instances whose wait has elapsed"""
        set_correlation_id(generate_correlation_id())
        try:
            resumed = await self.flow_engine.resume_due_instances(settings.flow_resume_batch_size)
            if resumed:
                logger.info(
                    f"Resumed {resumed} flow instances",
                    extra={"resumed": resumed, "server_id": self._server_id}
                )
            return resumed
        except Exception as e:
            logger.error(
                f"Error in flow resume job: {e}",
                extra={"error_type": type(e).__name__, "error": str(e)}
            )
            return 0


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


def get_scheduler(
    drip_engine: Optional[DripEngine] = None,
    flow_engine: Optional[FlowEngine] = None
) -> AutomationScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler(drip_engine or DripEngine(), flow_engine or FlowEngine())
    return _scheduler


def start_scheduler(drip_engine: Optional[DripEngine] = None, flow_engine: Optional[FlowEngine] = None) -> None:
    """Start the global scheduler"""
    scheduler = get_scheduler(drip_engine, flow_engine)
    scheduler.start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None


def is_scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.is_running
