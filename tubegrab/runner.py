"""Runs a single conversion job through yt-dlp and reports its progress to the job store."""
import asyncio
import os
import re
import sys
import random
import signal
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import SUBPROCESS_CREATION_FLAGS, FALLBACK_TITLE, PARTIAL_SUFFIXES
from .dependencies import DependencyManager
from .exceptions import DependencyError, DownloadCancelledError, JobExecutionError, URLExtractionError
from .formatting import sanitize_title
from .jobs import Job, JobStatus, JobStore
from .url_extractor import URLInfoExtractor

# The job's own progress band for the download itself; the head and tail are
# reserved for title lookup and finalization.
PROGRESS_START = 15.0
PROGRESS_END = 95.0

_PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')
_TAG_RE = re.compile(r'^\[(\w+)\]')

POSTPROCESSOR_MESSAGES = {
    'merger': 'Merging...',
    'extractaudio': 'Extracting audio...',
    'videoconvertor': 'Converting...',
    'embedthumbnail': 'Embedding thumbnail...',
    'fixupm4a': 'Fixing M4a...',
    'fixupm3u8': 'Fixing stream...',
    'metadata': 'Writing metadata...',
}


def parse_progress_line(line: str) -> Optional[float]:
    """Extracts a raw download percentage from a yt-dlp output line, if it carries one."""
    if line.startswith('PROGRESS::'):
        try:
            return float(line.split('::', 1)[1].strip().rstrip('%'))
        except (IndexError, ValueError):
            return None
    if line.startswith('[download]') and (match := _PERCENT_RE.search(line)):
        return float(match.group(1))
    return None


def map_progress(raw_percent: float) -> float:
    """Maps yt-dlp's 0-100 onto the job's download band."""
    raw_percent = min(100.0, max(0.0, raw_percent))
    return PROGRESS_START + (PROGRESS_END - PROGRESS_START) * raw_percent / 100


def remove_job_files(download_dir: Path, job_id: str) -> int:
    """Deletes every file in `download_dir` whose name contains `job_id`. Safe to repeat."""
    removed = 0
    try:
        entries = list(download_dir.iterdir())
    except OSError:
        return 0
    for entry in entries:
        if job_id in entry.name:
            try:
                entry.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not delete {entry.name}: {e}")
    return removed


def locate_artifact(download_dir: Path, job_id: str, ext: str) -> Optional[Path]:
    """
    Finds the file yt-dlp produced for a job.

    The expected `<id>.<ext>` path wins; otherwise the first finished file whose
    name contains the job id is used, since yt-dlp may pick another extension.
    """
    expected = download_dir / f"{job_id}.{ext}"
    if expected.is_file():
        return expected
    try:
        candidates = sorted(
            p for p in download_dir.iterdir()
            if job_id in p.name and p.is_file() and p.suffix.lower() not in PARTIAL_SUFFIXES
        )
    except OSError:
        return None
    return candidates[0] if candidates else None


class JobRunner:
    """Drives one job from queued to a terminal state."""
    HEURISTIC_INTERVAL = 2.0
    HEURISTIC_CEILING = 90.0

    def __init__(self, store: JobStore, dependencies: DependencyManager, download_dir: Path,
                 timeout: float = 300, metadata_timeout: float = 60):
        """
        Initializes the JobRunner.

        Args:
            store: The job store to report progress to.
            dependencies: Supplies (and lazily provisions) the yt-dlp binary.
            download_dir: Where artifacts are written.
            timeout: The upper bound in seconds for the conversion process.
            metadata_timeout: The upper bound in seconds for the title lookup.
        """
        self.store = store
        self.dependencies = dependencies
        self.download_dir = download_dir
        self.timeout = timeout
        self.metadata_timeout = metadata_timeout
        self.logger = logging.getLogger(__name__)
        self.active_processes: Dict[str, asyncio.subprocess.Process] = {}

    def build_command(self, job: Job, yt_dlp_path: Path) -> List[str]:
        """Builds the full yt-dlp command list for a job."""
        output_template = self.download_dir / f"{job.id}.%(ext)s"
        command = [
            str(yt_dlp_path), '--newline', '--no-playlist', '--no-mtime',
            '--progress-template', 'download:PROGRESS::%(progress._percent_str)s',
            '-o', str(output_template),
        ]
        if self.dependencies.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.dependencies.ffmpeg_path.parent)])

        if job.format == 'mp3':
            command.extend(['-f', 'bestaudio/best', '-x', '--audio-format', 'mp3', '--audio-quality', f'{job.quality}K'])
        else:
            res = job.quality
            command.extend([
                '-f', f'bestvideo[height<={res}]+bestaudio/best[height<={res}]/best',
                '--merge-output-format', 'mp4',
            ])
        command.append(job.url)
        return command

    async def run(self, job: Job):
        """
        Executes a job. Never raises for job failures; the outcome is written to the store.

        Cancellation still propagates after the job has been marked as failed.
        """
        self.logger.info(f"[{job.id}] Starting {job.format} conversion of {job.url}")
        try:
            self.store.update(job.id, progress=5, message="Starting...", status=JobStatus.PROCESSING)
            yt_dlp_path = await self.dependencies.ensure_yt_dlp()

            title = await self._fetch_title(job, yt_dlp_path)
            self.store.update(job.id, progress=PROGRESS_START, message="Downloading...", title=title)

            await self._execute(job, self.build_command(job, yt_dlp_path))

            self.store.update(job.id, progress=PROGRESS_END, message="Finalizing...")
            artifact = await asyncio.to_thread(locate_artifact, self.download_dir, job.id, job.format)
            if artifact is None:
                raise JobExecutionError("File not created")

            size = (await asyncio.to_thread(artifact.stat)).st_size
            filename = f"{title}{artifact.suffix.lower()}"
            self.store.complete(job.id, str(artifact), filename, size, f"Ready! ({size / 1024 / 1024:.2f} MB)")
            self.logger.info(f"[{job.id}] Done: {filename} ({size} bytes)")
        except asyncio.CancelledError:
            await self._fail(job, "Cancelled")
            raise
        except (JobExecutionError, DependencyError, DownloadCancelledError) as e:
            await self._fail(job, f"Failed: {str(e)[:120]}")
        except OSError as e:
            await self._fail(job, f"Failed: OS error: {e}")
        except Exception:
            self.logger.exception(f"[{job.id}] Unexpected error during conversion")
            await self._fail(job, "Failed: an unexpected error occurred")

    async def _fetch_title(self, job: Job, yt_dlp_path: Path) -> str:
        """Looks up the media title; any failure falls back to a generic name."""
        extractor = URLInfoExtractor(yt_dlp_path, timeout=self.metadata_timeout)
        try:
            return sanitize_title(await extractor.get_title(job.url))
        except URLExtractionError as e:
            self.logger.warning(f"[{job.id}] Could not fetch title, using fallback: {e}")
            return FALLBACK_TITLE

    async def _fail(self, job: Job, message: str):
        self.store.fail(job.id, message)
        removed = await asyncio.to_thread(remove_job_files, self.download_dir, job.id)
        self.logger.error(f"[{job.id}] {message} (removed {removed} partial file(s))")

    async def _execute(self, job: Job, command: List[str]):
        """
        Runs yt-dlp and consumes its output until it exits.

        Raises:
            JobExecutionError: On a non-zero exit, a timeout, or when yt-dlp cannot be started.
        """
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **kwargs
            )
        except FileNotFoundError:
            raise JobExecutionError("yt-dlp executable not found")
        except OSError as e:
            raise JobExecutionError(f"Could not start yt-dlp: {e}")

        self.active_processes[job.id] = process
        state = {'saw_marker': False, 'error': None}
        ticker = asyncio.create_task(self._simulate_progress(job.id, state))
        try:
            return_code = await asyncio.wait_for(self._consume_output(job, process, state), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise JobExecutionError(f"Timed out after {self.timeout:.0f}s")
        finally:
            ticker.cancel()
            if process.returncode is None:
                await self.kill_process(process)
            self.active_processes.pop(job.id, None)

        if return_code != 0:
            raise JobExecutionError(state['error'] or f"yt-dlp exited with code {return_code}")

    async def _consume_output(self, job: Job, process: asyncio.subprocess.Process, state: Dict[str, Any]) -> int:
        assert process.stdout is not None
        while True:
            line_bytes = await process.stdout.readline()
            if not line_bytes: break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if not clean_line: continue
            self.logger.debug(f"[{job.id}] {clean_line}")

            if clean_line.startswith('ERROR:'):
                state['error'] = clean_line[6:].strip()
                continue

            percentage = parse_progress_line(clean_line)
            if percentage is not None:
                state['saw_marker'] = True
                self.store.update(job.id, progress=map_progress(percentage), message=f"Downloading... {percentage:.1f}%")
            elif tag_match := _TAG_RE.match(clean_line):
                if (status_key := tag_match.group(1).lower()) in POSTPROCESSOR_MESSAGES:
                    self.store.update(job.id, message=POSTPROCESSOR_MESSAGES[status_key])
        return await process.wait()

    async def _simulate_progress(self, job_id: str, state: Dict[str, Any]):
        """Nudges progress forward while yt-dlp reports no percentages of its own."""
        while not state['saw_marker']:
            await asyncio.sleep(self.HEURISTIC_INTERVAL)
            if state['saw_marker']:
                return
            job = self.store.get(job_id)
            if job is None or job.is_terminal:
                return
            if job.progress < self.HEURISTIC_CEILING:
                self.store.update(job_id, progress=min(self.HEURISTIC_CEILING, job.progress + random.uniform(1, 3)))

    async def kill_process(self, process: asyncio.subprocess.Process):
        """Kills a yt-dlp process together with any ffmpeg children it spawned."""
        if process.returncode is not None:
            return
        try:
            if sys.platform == 'win32':
                process.kill()
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass  # Already gone
        try:
            await asyncio.wait_for(process.wait(), timeout=10)
        except asyncio.TimeoutError:
            self.logger.warning(f"Process {process.pid} did not exit after being killed")

    async def terminate_all(self):
        """Kills every yt-dlp process still running."""
        for job_id, process in list(self.active_processes.items()):
            self.logger.info(f"Terminating process for {job_id} (PID: {process.pid})...")
            await self.kill_process(process)
