"""Periodic cleanup of abandoned artifacts, stale job records, and expired rate-limit windows."""
import asyncio
import time
import logging
from pathlib import Path
from typing import Callable, Optional

from .jobs import JobStore
from .rate_limit import RateLimiter


class Janitor:
    """
    Sweeps the download directory and the job store on a fixed interval.

    Every cleanup step is best-effort; a failure in one sweep is logged and the
    next tick tries again.
    """
    def __init__(self, store: JobStore, download_dir: Path, interval: float = 120,
                 file_max_age: float = 180, record_max_age: float = 300,
                 rate_limiter: Optional[RateLimiter] = None, clock: Callable[[], float] = time.time):
        """
        Initializes the Janitor.

        Args:
            store: The shared job store.
            download_dir: The directory holding job artifacts.
            interval: Seconds between sweeps.
            file_max_age: Files last modified longer ago than this are deleted.
            record_max_age: Job records created longer ago than this are deleted.
            rate_limiter: Optional limiter whose expired windows are purged.
            clock: Wall-clock time source, comparable with file mtimes.
        """
        self.store = store
        self.download_dir = download_dir
        self.interval = interval
        self.file_max_age = file_max_age
        self.record_max_age = record_max_age
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="janitor")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Cleanup sweep failed")

    async def sweep(self):
        """Runs one cleanup pass over files, records, and rate-limit windows."""
        files = await asyncio.to_thread(self.sweep_files)
        records = self.sweep_records()
        windows = self.rate_limiter.purge(slack=self.rate_limiter.window) if self.rate_limiter else 0
        if files or records or windows:
            self.logger.info(f"Cleanup removed {files} file(s), {records} job record(s), {windows} rate-limit window(s).")

    def sweep_files(self) -> int:
        """Deletes files older than the age threshold, whether or not a job still references them."""
        cutoff = self.clock() - self.file_max_age
        try:
            entries = list(self.download_dir.iterdir())
        except FileNotFoundError:
            return 0
        except OSError as e:
            self.logger.warning(f"Could not list {self.download_dir}: {e}")
            return 0

        count = 0
        for item in entries:
            try:
                if item.is_file() and item.stat().st_mtime < cutoff:
                    item.unlink()
                    count += 1
            except FileNotFoundError:
                pass # Already gone
            except OSError as e:
                self.logger.warning(f"Error deleting {item.name}: {e}")
        return count

    def sweep_records(self) -> int:
        """Deletes job records older than the age threshold, regardless of status."""
        cutoff = self.clock() - self.record_max_age
        count = 0
        for job in self.store.snapshot():
            if job.created_at < cutoff and self.store.delete(job.id):
                count += 1
        return count
