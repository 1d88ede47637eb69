"""Manages the discovery, download, and updates for yt-dlp, and the discovery of FFmpeg."""
import sys
import shutil
import asyncio
import urllib.parse
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any

import aiohttp
import aiofiles

from .constants import YT_DLP_URLS, REQUEST_HEADERS, SUBPROCESS_CREATION_FLAGS
from .exceptions import DownloadCancelledError, DependencyError


class DependencyManager:
    """Manages the discovery, download, and updates for yt-dlp and FFmpeg."""
    DOWNLOAD_RETRY_ATTEMPTS = 3

    def __init__(self, bin_dir: Path):
        """
        Initializes the DependencyManager.

        Args:
            bin_dir: The directory that holds binaries managed by this service.
        """
        self.bin_dir = bin_dir
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None
        self.download_task: Optional[asyncio.Task] = None
        self._provision_task: Optional[asyncio.Task] = None
        self._provision_lock = asyncio.Lock()
        self._cancel_requested = False

    @property
    def tool_ready(self) -> bool:
        return self.yt_dlp_path is not None and self.yt_dlp_path.exists()

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def cancel_download(self):
        """Signals the download process to stop."""
        if self.download_task and not self.download_task.done():
            self.logger.info("Cancellation signal sent to dependency downloader.")
            self._cancel_requested = True
            self.download_task.cancel()

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        local_path = self.bin_dir / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def ensure_yt_dlp(self) -> Path:
        """
        Returns a usable yt-dlp path, downloading the binary first if none is known.

        Concurrent callers share a single provisioning attempt. The download runs
        in its own task, so cancelling a caller leaves it running, and
        `cancel_download()` fails every caller with DownloadCancelledError.

        Raises:
            DependencyError: If yt-dlp cannot be found or downloaded.
            DownloadCancelledError: If provisioning was cancelled.
        """
        if self.tool_ready:
            return self.yt_dlp_path
        async with self._provision_lock:
            if self.tool_ready:
                return self.yt_dlp_path
            if await asyncio.to_thread(self.find_yt_dlp):
                return self.yt_dlp_path
            if self._provision_task is None or self._provision_task.done():
                self._provision_task = asyncio.create_task(self.install_or_update_yt_dlp())
                self._provision_task.add_done_callback(self._provision_done)
            provisioning = self._provision_task

        result = await asyncio.shield(provisioning)
        if not result['success']:
            raise DependencyError(f"yt-dlp is not available: {result['error']}")
        return self.yt_dlp_path

    def _provision_done(self, task: asyncio.Task):
        """Retrieves the outcome so a provisioning failure nobody awaited is not reported as lost."""
        if not task.cancelled() and task.exception() is not None:
            self.logger.info(f"yt-dlp provisioning ended with: {task.exception()}")

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
        except Exception:
            self.logger.exception(f"Error checking version for {executable_path}")
            return "Error checking version"

    async def _download_file(self, session: aiohttp.ClientSession, url: str, save_path: Path):
        """Downloads a file as a single stream, with retries and coarse progress logging."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                async with session.get(url, headers=REQUEST_HEADERS, timeout=aiohttp.ClientTimeout(total=None, sock_read=60)) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    if total_size <= 0:
                        self.logger.info(f"Downloading {save_path.name}... (size unknown)")

                    bytes_downloaded, next_report = 0, 25
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(8192):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                            if total_size > 0 and bytes_downloaded * 100 >= total_size * next_report:
                                self.logger.info(f"Downloading {save_path.name}... {next_report}% of {total_size/1024/1024:.1f} MB")
                                next_report += 25
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Download error on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1: await asyncio.sleep(2 ** attempt)
                else: raise e

    async def install_or_update_yt_dlp(self) -> Dict[str, Any]:
        """Coroutine for downloading and setting up yt-dlp in the managed bin directory."""
        self.download_task = asyncio.current_task()
        self._cancel_requested = False
        platform = sys.platform
        if platform not in YT_DLP_URLS:
            return {'type': 'yt-dlp', 'success': False, 'error': f"Unsupported OS: {platform}"}

        url = YT_DLP_URLS[platform]
        filename = Path(urllib.parse.unquote(url)).name
        save_path = self.bin_dir / ('yt-dlp' if platform == 'darwin' and filename == 'yt-dlp_macos' else filename)
        temp_path = save_path.with_name(save_path.name + '.download')
        try:
            await asyncio.to_thread(self.bin_dir.mkdir, parents=True, exist_ok=True)
            self.logger.info(f"Downloading yt-dlp from {url}")

            async with aiohttp.ClientSession() as session:
                await self._download_file(session, url, temp_path)

            if platform in ['linux', 'darwin']:
                await asyncio.to_thread(temp_path.chmod, 0o755)
            await asyncio.to_thread(temp_path.replace, save_path)

            self.yt_dlp_path = save_path
            self.logger.info(f"yt-dlp installed at {save_path}")
            return {'type': 'yt-dlp', 'success': True, 'path': str(save_path)}
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled.")
            if not self._cancel_requested:
                # The caller itself is being cancelled; let that propagate.
                raise
            raise DownloadCancelledError("Download cancelled.")
        except aiohttp.ClientError as e:
            self.logger.error(f"yt-dlp download failed: {e}")
            return {'type': 'yt-dlp', 'success': False, 'error': f"Network error: {e}"}
        except (IOError, OSError) as e:
            self.logger.error(f"yt-dlp could not be written: {e}")
            return {'type': 'yt-dlp', 'success': False, 'error': f"File error: {e}"}
        except Exception:
            self.logger.exception("An unexpected error occurred during yt-dlp download.")
            return {'type': 'yt-dlp', 'success': False, 'error': "An unexpected error occurred."}
        finally:
            self.download_task = None
            if temp_path.exists():
                try: temp_path.unlink()
                except OSError: pass
