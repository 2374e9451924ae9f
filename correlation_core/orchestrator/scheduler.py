"""Periodic background jobs (baseline cleanup, edge decay, knowledge refresh)."""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from correlation_core.monitoring.metrics import background_tasks_active, background_tasks_total
from correlation_core.observability import get_logger

logger = get_logger(__name__)


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[object]]
    run_immediately: bool = False
    runs: int = 0
    failures: int = 0


class BackgroundScheduler:
    """Runs registered coroutine functions at fixed intervals until stopped."""

    def __init__(self):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.is_running = False

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError(f"Job {name} needs a positive interval")
        job = ScheduledJob(name, interval_seconds, func, run_immediately)
        self._jobs[name] = job
        if self.is_running:
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"job:{name}")
        return job

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    async def run_job(self, job: ScheduledJob) -> None:
        """Run a job once; failures are logged and counted."""
        background_tasks_active.labels(task_type=job.name).inc()
        try:
            await job.func()
            job.runs += 1
            background_tasks_total.labels(task_type=job.name, status="success").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            background_tasks_total.labels(task_type=job.name, status="error").inc()
            logger.error(
                f"Background job {job.name} failed: {e}",
                extra={"job": job.name, "error_type": type(e).__name__},
                exc_info=True,
            )
        finally:
            background_tasks_active.labels(task_type=job.name).dec()

    async def _loop(self, job: ScheduledJob) -> None:
        if job.run_immediately:
            await self.run_job(job)
        while self.is_running:
            await asyncio.sleep(job.interval_seconds)
            await self.run_job(job)

    def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"job:{name}")
        logger.info(f"Background scheduler started with {len(self._jobs)} jobs")

    async def stop(self) -> None:
        """Cancel every job loop, including a run in progress."""
        self.is_running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Background scheduler stopped")
