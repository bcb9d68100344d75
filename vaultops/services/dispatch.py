from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from vaultops.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


JobWork = Callable[[], Awaitable[None]]


class JobDispatcher:
    """In-process worker pool keyed by job id.

    Each job id owns at most one task, which keeps every status write for a
    job on a single writer. Concurrency across jobs is capped by a semaphore;
    tasks that cannot start yet simply wait for a slot.
    """

    def __init__(self, max_concurrency: int) -> None:
        self._limit = max(1, int(max_concurrency))
        self._sem = asyncio.Semaphore(self._limit)
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def active_job_ids(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def is_active(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def submit(self, job_id: str, work: JobWork) -> asyncio.Task[None]:
        # Fire-and-forget: callers never await the task they submit.
        if self.is_active(job_id):
            raise RuntimeError(f"job {job_id} already has a running task")
        task = asyncio.create_task(self._run(job_id, work), name=f"job:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda done, job_id=job_id: self._finished(job_id, done))
        increment_counter("jobs_dispatched_total")
        return task

    async def _run(self, job_id: str, work: JobWork) -> None:
        async with self._sem:
            logger.debug("job_task_started job_id=%s", job_id)
            await work()

    def _finished(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)
        if task.cancelled():
            logger.info("job_task_cancelled job_id=%s", job_id)
            return
        exc = task.exception()
        if exc is not None:
            # Job bodies record their own failures; reaching here means the recorder failed too.
            increment_counter("job_task_crashed_total")
            logger.error("job_task_crashed job_id=%s", job_id, exc_info=exc)

    async def wait(self, job_id: str, timeout: float | None = None) -> None:
        task = self._tasks.get(job_id)
        if task is None:
            return
        await asyncio.wait({task}, timeout=timeout)

    async def drain(self, timeout: float | None = None) -> None:
        # Tasks may submit follow-up work, so loop until nothing is outstanding.
        while True:
            pending = {task for task in self._tasks.values() if not task.done()}
            if not pending:
                return
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                return

    async def shutdown(self) -> None:
        # No durable replay: outstanding work is cancelled and left to operators.
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
