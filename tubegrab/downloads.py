"""Manages the conversion queue and the worker tasks that drain it."""
import asyncio
import logging
from typing import Callable, Optional

from .exceptions import QueueFullError
from .jobs import Job, JobStore
from .runner import JobRunner


class DownloadQueue:
    """
    A FIFO queue of jobs served by a fixed number of worker tasks.

    At most `max_concurrent` jobs run at once; jobs start in submission order,
    each exactly once, and every admitted job ends in a terminal state.
    """
    def __init__(self, store: JobStore, runner: JobRunner, max_concurrent: int = 2, max_pending: int = 10):
        """
        Initializes the DownloadQueue.

        Args:
            store: The shared job store.
            runner: Executes a single job.
            max_concurrent: The number of jobs allowed to run simultaneously.
            max_pending: The number of waiting jobs beyond which submissions are rejected.
        """
        self.store = store
        self.runner = runner
        self.max_concurrent = max_concurrent
        self.max_pending = max_pending
        self.logger = logging.getLogger(__name__)
        self.job_queue: asyncio.Queue[Job] = asyncio.Queue()
        self.worker_tasks: set[asyncio.Task] = set()
        self.idle_workers: set[asyncio.Task] = set()
        self.active_count: int = 0
        self._stopping = False

    @property
    def pending_count(self) -> int:
        return self.job_queue.qsize()

    def set_config(self, max_concurrent: int, max_pending: int):
        """
        Sets runtime limits.

        When shrinking, idle workers are stopped at once and busy ones retire
        after finishing their current job.
        """
        self.max_concurrent = max_concurrent
        self.max_pending = max_pending
        if self.worker_tasks:
            self._retire_idle_workers()
            self._start_workers()

    def start(self):
        """Starts worker tasks up to the configured maximum."""
        self._stopping = False
        self._start_workers()

    def submit(self, job: Job):
        """
        Appends a job to the tail of the queue.

        Raises:
            QueueFullError: If every worker slot is busy and `max_pending` jobs are
                already waiting. Running and queued jobs are counted together so a burst
                that idle workers have not picked up yet is not rejected early.
        """
        if self._stopping:
            raise QueueFullError("Server is shutting down")
        if self.active_count + self.pending_count >= self.max_concurrent + self.max_pending:
            self.logger.warning(f"Queue full ({self.pending_count} pending). Rejecting job {job.id}.")
            raise QueueFullError("Server busy. Please try again in a moment.")
        self.job_queue.put_nowait(job)
        self.logger.info(f"[{job.id}] Queued ({self.pending_count} pending, {self.active_count} active)")
        self._start_workers()

    async def stop(self):
        """Stops all workers, kills live processes, and fails every job still waiting."""
        self.logger.info("Stopping conversion queue...")
        self._stopping = True

        tasks = list(self.worker_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        while not self.job_queue.empty():
            job = self.job_queue.get_nowait()
            self.store.fail(job.id, "Server shutting down")
            self.job_queue.task_done()

        await self.runner.terminate_all()

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def _start_workers(self):
        """Starts worker tasks up to the configured maximum."""
        needed = self.max_concurrent - len(self.worker_tasks)
        for _ in range(needed):
            task = asyncio.create_task(self._worker_task())
            self.worker_tasks.add(task)
            task.add_done_callback(self._task_done_callback(self.worker_tasks))

    def _should_retire(self) -> bool:
        return len(self.worker_tasks) > self.max_concurrent

    def _retire_idle_workers(self):
        """Cancels surplus workers that are waiting for a job. Queued jobs stay queued."""
        surplus = len(self.worker_tasks) - self.max_concurrent
        for task in list(self.idle_workers)[:max(0, surplus)]:
            self.idle_workers.discard(task)
            self.worker_tasks.discard(task)
            task.cancel()

    async def _worker_task(self):
        """Main loop for a conversion worker task."""
        current: Optional[asyncio.Task] = asyncio.current_task()
        try:
            while not self._should_retire():
                self.idle_workers.add(current)
                try:
                    job = await self.job_queue.get()
                finally:
                    self.idle_workers.discard(current)
                self.active_count += 1
                try:
                    await self.runner.run(job)
                except Exception:
                    self.logger.exception(f"[{job.id}] Runner raised unexpectedly")
                    self.store.fail(job.id, "Failed: an unexpected error occurred")
                finally:
                    self.active_count -= 1
                    self.job_queue.task_done()
        except asyncio.CancelledError:
            self.logger.info("Conversion worker task cancelled.")
        finally:
            self.worker_tasks.discard(current)
            self.idle_workers.discard(current)
