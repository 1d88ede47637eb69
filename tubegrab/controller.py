"""
Defines the main AppController class, which orchestrates the service's logic.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from .config import Settings
from .constants import DEFAULT_QUALITY, SUPPORTED_FORMATS
from .dependencies import DependencyManager
from .downloads import DownloadQueue
from .exceptions import DownloadCancelledError, InvalidRequestError
from .formatting import validate_media_url
from .janitor import Janitor
from .jobs import Job, JobStatus, JobStore, generate_job_id
from .rate_limit import RateLimiter
from .runner import JobRunner, remove_job_files
from .updater import YtDlpUpdater
from .url_extractor import URLInfoExtractor


class AppController:
    """The central controller for the service's business logic. The HTTP layer only talks to this."""

    def __init__(self, settings: Settings, dependencies: Optional[DependencyManager] = None):
        """
        Initializes the AppController.

        Args:
            settings: The loaded service settings.
            dependencies: An optional pre-built dependency manager (used by tests).
        """
        self.settings = settings
        self.logger = logging.getLogger(__name__)

        # Shared State
        self.store = JobStore()
        self.rate_limiter: Optional[RateLimiter] = None
        if settings.rate_limit_enabled:
            self.rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

        # Backend Managers
        self.dep_manager = dependencies or DependencyManager(settings.bin_dir)
        self.runner = JobRunner(
            self.store, self.dep_manager, settings.download_dir,
            timeout=settings.job_timeout_seconds, metadata_timeout=settings.metadata_timeout_seconds,
        )
        self.download_queue = DownloadQueue(
            self.store, self.runner, settings.max_concurrent_jobs, settings.max_pending_jobs,
        )
        self.janitor = Janitor(
            self.store, settings.download_dir,
            interval=settings.janitor_interval_seconds,
            file_max_age=settings.file_max_age_seconds,
            record_max_age=settings.record_max_age_seconds,
            rate_limiter=self.rate_limiter,
        )
        self.updater = YtDlpUpdater(self.dep_manager)
        self._background_tasks: set[asyncio.Task] = set()

    async def startup(self):
        """Prepares directories and tools, then starts the queue and the janitor."""
        await asyncio.to_thread(self.settings.download_dir.mkdir, parents=True, exist_ok=True)
        await self.dep_manager.initialize()

        if self.settings.auto_provision and not self.dep_manager.tool_ready:
            try:
                await self.dep_manager.ensure_yt_dlp()
            except Exception as e:
                # The first job or info request retries provisioning.
                self.logger.warning(f"yt-dlp provisioning failed at startup: {e}")

        if self.settings.check_for_updates_on_startup and self.dep_manager.tool_ready:
            self._spawn(self.updater.check_and_update())

        self.download_queue.start()
        self.janitor.start()
        self.logger.info("Service started.")

    async def shutdown(self):
        """Stops background work. Pending jobs are failed; files are left for the next start's janitor."""
        self.logger.info("Service shutting down.")
        self.dep_manager.cancel_download()
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.janitor.stop()
        await self.download_queue.stop()

    def _spawn(self, coro) -> asyncio.Task:
        """Runs a fire-and-forget coroutine whose exceptions are logged."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._handle_task_exception)
        return task

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self._background_tasks.discard(task)
        try:
            task.result()
        except (asyncio.CancelledError, DownloadCancelledError):
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def check_rate_limit(self, client_key: str):
        """Raises RateLimitExceeded when the client is over its allowance."""
        if self.rate_limiter is not None:
            self.rate_limiter.hit(client_key)

    def submit(self, url: str, media_format: str, quality: Optional[str] = None) -> Job:
        """
        Validates a conversion request, records it, and queues it.

        Raises:
            InvalidRequestError: If the URL or format is missing or unsupported.
            QueueFullError: If the queue is saturated. No record is kept in that case.
        """
        url = validate_media_url(url)
        if media_format not in SUPPORTED_FORMATS:
            raise InvalidRequestError(f"Unsupported format: {media_format}")

        job = Job(
            id=generate_job_id(),
            url=url,
            format=media_format,
            quality=str(quality or DEFAULT_QUALITY[media_format]),
        )
        self.store.create(job)
        try:
            self.download_queue.submit(job)
        except Exception:
            self.store.delete(job.id)
            raise
        return job

    async def fetch_info(self, url: str) -> Dict[str, Any]:
        """
        Returns display metadata for a URL.

        Raises:
            InvalidRequestError: If the URL is missing or unsupported.
            DependencyError: If yt-dlp is unavailable.
            URLExtractionError: If yt-dlp fails to read the URL.
        """
        url = validate_media_url(url)
        yt_dlp_path = await self.dep_manager.ensure_yt_dlp()
        extractor = URLInfoExtractor(yt_dlp_path, timeout=self.settings.metadata_timeout_seconds)
        return await extractor.get_info(url)

    def health(self) -> Dict[str, Any]:
        return {
            'status': 'ok',
            'queueLength': self.download_queue.pending_count,
            'activeCount': self.download_queue.active_count,
            'toolReady': self.dep_manager.tool_ready,
            'jobs': len(self.store),
        }

    def get_completed_job(self, job_id: str) -> Optional[Job]:
        """Returns the job only if it is completed and its artifact still exists."""
        job = self.store.get(job_id)
        if job is None or job.status != JobStatus.COMPLETED or not job.file_path:
            return None
        return job

    def schedule_removal(self, job_id: str) -> asyncio.Task:
        """Deletes a served job's files and record once the grace period has passed."""
        async def remove_later():
            await asyncio.sleep(self.settings.download_grace_seconds)
            removed = await asyncio.to_thread(remove_job_files, self.settings.download_dir, job_id)
            self.store.delete(job_id)
            self.logger.info(f"[{job_id}] Removed after download ({removed} file(s))")

        return self._spawn(remove_later())
