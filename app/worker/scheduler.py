"""In-process polling scheduler for the background job runners."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class ScheduledJob:
    """A named runner invoked every ``interval_seconds``."""

    name: str
    runner: Callable[[], Awaitable[Any]]
    interval_seconds: float


class PollingScheduler:
    """Runs one polling loop per registered job until stopped.

    A cycle that takes longer than its interval starts the next cycle
    immediately; otherwise the loop sleeps for the remainder. A failing
    cycle is logged and the loop keeps going.
    """

    def __init__(self, jobs: Optional[List[ScheduledJob]] = None):
        self.jobs: List[ScheduledJob] = list(jobs or [])
        self._stop_event = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self.last_results: Dict[str, Any] = {}

    def add_job(
        self, name: str, runner: Callable[[], Awaitable[Any]], interval_seconds: float
    ) -> None:
        if self.is_running:
            raise RuntimeError("Cannot add jobs to a running scheduler")
        self.jobs.append(ScheduledJob(name=name, runner=runner, interval_seconds=interval_seconds))

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stop_event.is_set()

    def start(self) -> None:
        """Spawn one loop task per job on the running event loop."""
        if self._tasks:
            return
        self._stop_event.clear()
        for job in self.jobs:
            self._tasks[job.name] = asyncio.create_task(self._run_loop(job), name=f"scheduler:{job.name}")
        LOGGER.info("Scheduler started", extra={"jobs": [job.name for job in self.jobs]})

    def stop(self) -> None:
        """Signal every loop to exit after its current cycle."""
        self._stop_event.set()

    async def wait_closed(self) -> None:
        """Wait for every loop to exit."""
        if not self._tasks:
            return
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        LOGGER.info("Scheduler stopped")

    async def run_once(self, job: ScheduledJob) -> Any:
        """Run one cycle of a job; failures are logged and return None."""
        started = time.monotonic()
        try:
            result = await job.runner()
        except Exception as e:
            LOGGER.error(
                f"Scheduled job failed: {str(e)}",
                exc_info=True,
                extra={"job": job.name}
            )
            return None

        self.last_results[job.name] = result
        LOGGER.debug(
            "Scheduled job finished",
            extra={"job": job.name, "duration_ms": int((time.monotonic() - started) * 1000)}
        )
        return result

    async def _run_loop(self, job: ScheduledJob) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            await self.run_once(job)

            remaining = job.interval_seconds - (time.monotonic() - started)
            if remaining <= 0:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
