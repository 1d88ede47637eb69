"""
Defines the data class for a conversion job and the in-memory store that tracks them.

The store is the single source of truth shared by the queue, the runner, the
janitor, and the HTTP handlers. All state is ephemeral.
"""

import time
import uuid
import threading
import dataclasses
from dataclasses import dataclass
from typing import Dict, Any, List, Optional


class JobStatus:
    """The lifecycle states a job moves through."""
    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR})


def generate_job_id() -> str:
    """Returns a fresh opaque job identifier."""
    return uuid.uuid4().hex


@dataclass
class Job:
    """
    Represents a single conversion request and its progress.

    Attributes:
        id: A unique identifier for the job, also embedded in every file it writes.
        url: The media URL provided by the client.
        format: The requested container, 'mp3' or 'mp4'.
        quality: Audio bitrate in kbps for mp3, maximum height in pixels for mp4.
        status: One of the JobStatus values.
        progress: Percentage from 0 to 100.
        message: Human-readable status line, replaced on every update.
        created_at: Submission time as a UNIX timestamp.
        title: The sanitized media title, once known.
        file_path: Location of the finished artifact on disk.
        filename: The user-facing name of the artifact.
        file_size: Size of the artifact in bytes.
    """
    id: str
    url: str
    format: str
    quality: str
    status: str = JobStatus.QUEUED
    progress: float = 0
    message: str = "Queued..."
    created_at: float = dataclasses.field(default_factory=time.time)
    title: Optional[str] = None
    file_path: Optional[str] = None
    filename: Optional[str] = None
    file_size: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_public_dict(self) -> Dict[str, Any]:
        """Returns the client-facing view of the job; request parameters and paths stay internal."""
        return {
            'id': self.id,
            'status': self.status,
            'progress': round(self.progress, 1),
            'message': self.message,
            'createdAt': self.created_at,
            'filename': self.filename,
            'fileSize': self.file_size,
        }


class JobStore:
    """
    A lock-guarded mapping from job id to Job.

    Readers always receive copies, so a snapshot never reflects a half-applied
    update. Updates for an id that no longer exists are silently ignored.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, job: Job) -> Job:
        """
        Inserts a new job in the queued state.

        Raises:
            KeyError: If a job with the same id is already present.
        """
        with self._lock:
            if job.id in self._jobs:
                raise KeyError(f"Job {job.id} already exists")
            job.status = JobStatus.QUEUED
            self._jobs[job.id] = job
            return dataclasses.replace(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dataclasses.replace(job) if job else None

    def update(self, job_id: str, progress: Optional[float] = None, message: Optional[str] = None,
               status: Optional[str] = None, **fields: Any) -> bool:
        """
        Applies a partial update to a job.

        Terminal jobs are frozen, and progress never moves backwards while a job
        is still running.

        Returns:
            True if the update was applied, False if the job is gone or already terminal.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            if progress is not None:
                job.progress = max(job.progress, min(100.0, max(0.0, float(progress))))
            if message is not None:
                job.message = message
            if status is not None:
                job.status = status
            for name, value in fields.items():
                setattr(job, name, value)
            return True

    def complete(self, job_id: str, file_path: str, filename: str, file_size: int, message: str) -> bool:
        """Moves a job to the completed state together with its artifact details."""
        return self.update(
            job_id, progress=100, message=message, status=JobStatus.COMPLETED,
            file_path=file_path, filename=filename, file_size=file_size,
        )

    def fail(self, job_id: str, message: str) -> bool:
        """Moves a job to the error state, resetting its progress."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = JobStatus.ERROR
            job.progress = 0
            job.message = message
            return True

    def delete(self, job_id: str) -> bool:
        """Removes a job. Deleting an unknown id is a no-op."""
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def snapshot(self) -> List[Job]:
        """Returns copies of all jobs, safe to iterate while the store keeps changing."""
        with self._lock:
            return [dataclasses.replace(job) for job in self._jobs.values()]

    def count_by_status(self, status: str) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == status)
