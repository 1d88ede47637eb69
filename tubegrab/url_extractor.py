"""
Provides methods to extract information from URLs using yt-dlp.
"""

import asyncio
import json
import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .exceptions import URLExtractionError
from .constants import SUBPROCESS_CREATION_FLAGS
from .formatting import format_duration, format_views


class URLInfoExtractor:
    """
    Provides methods to extract information from URLs using yt-dlp.

    Each call runs yt-dlp in metadata-only mode; nothing is downloaded.
    """
    def __init__(self, yt_dlp_path: Path, timeout: float = 60):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: The timeout in seconds for a single metadata command.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, command: List[str], timeout: float) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
        """
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise URLExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("Metadata command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise URLExtractionError(error_msg)

        return stdout, stderr

    async def get_title(self, url: str) -> str:
        """
        Quickly retrieves the raw title for a single video URL.

        Raises:
            URLExtractionError: If the yt-dlp command fails or prints nothing.
        """
        command = [str(self.yt_dlp_path), '--print', 'title', '--no-playlist', '--no-warnings', url]
        stdout, _ = await self._run_command(command, timeout=self.timeout)
        title = stdout.strip().splitlines()[0].strip() if stdout.strip() else ''
        if not title:
            raise URLExtractionError("Title not found")
        return title

    async def get_info(self, url: str) -> Dict[str, Any]:
        """
        Retrieves display metadata for a single video URL.

        Returns:
            A dict with id, title, author, thumbnail, and the formatted duration and views.

        Raises:
            URLExtractionError: If the yt-dlp command fails or its JSON cannot be parsed.
        """
        command = [str(self.yt_dlp_path), '--dump-json', '--no-playlist', '--no-warnings', url]
        stdout, _ = await self._run_command(command, timeout=self.timeout)
        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            self.logger.error(f"Could not parse yt-dlp JSON for '{url}': {e}")
            raise URLExtractionError("Could not parse video information.")
        if not isinstance(info, dict):
            raise URLExtractionError("Could not parse video information.")

        video_id = info.get('id') or ''
        return {
            'id': video_id,
            'title': info.get('title') or 'Video',
            'author': info.get('uploader') or info.get('channel') or 'Unknown',
            'thumbnail': info.get('thumbnail') or f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
            'duration': format_duration(info.get('duration')),
            'views': format_views(info.get('view_count')),
        }
