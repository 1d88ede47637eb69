"""Checks GitHub for a newer yt-dlp release than the one installed."""
import asyncio
import logging
import json
from typing import Optional

import requests
from packaging.version import parse, InvalidVersion

from .constants import YT_DLP_RELEASES_API_URL, REQUEST_HEADERS, REQUEST_TIMEOUTS
from .dependencies import DependencyManager


class YtDlpUpdater:
    """Keeps the managed yt-dlp binary current, since stale extractors break on site changes."""

    def __init__(self, dependencies: DependencyManager):
        """
        Initializes the YtDlpUpdater.

        Args:
            dependencies: The manager that owns the yt-dlp binary.
        """
        self.dependencies = dependencies
        self.logger = logging.getLogger(__name__)

    def fetch_latest_version(self) -> Optional[str]:
        """
        Fetches the latest release tag from GitHub. Blocking; run it in a thread.

        Handles network errors, parsing errors, and unexpected API responses
        gracefully by returning None.
        """
        try:
            response = requests.get(YT_DLP_RELEASES_API_URL, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS)
            response.raise_for_status()

            data = response.json()
            if not isinstance(data, dict):
                self.logger.warning(f"Unexpected API response type: {type(data)}")
                return None

            tag = data.get('tag_name')
            if not tag:
                self.logger.warning("Could not find version tag in API response.")
                return None
            return tag[1:] if tag.startswith('v') else tag

        except requests.exceptions.RequestException as e:
            status_code = f" (Status: {e.response.status_code})" if hasattr(e, 'response') and e.response is not None else ""
            self.logger.warning(f"Failed to check for yt-dlp updates (network error): {e}{status_code}")
        except (KeyError, TypeError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not parse API response from GitHub: {e}")
        return None

    async def check_and_update(self) -> bool:
        """
        Re-downloads yt-dlp when GitHub has a newer release than the local binary.

        Returns:
            True if a newer binary was installed.
        """
        self.logger.info("Checking for yt-dlp updates...")
        current_str = await self.dependencies.get_version(self.dependencies.yt_dlp_path)
        latest_str = await asyncio.to_thread(self.fetch_latest_version)
        if not latest_str:
            return False

        try:
            current_version = parse(current_str)
            latest_version = parse(latest_str)
        except InvalidVersion:
            self.logger.warning(f"Could not compare yt-dlp versions: local '{current_str}', latest '{latest_str}'")
            return False

        self.logger.info(f"yt-dlp version: {current_version}, latest release: {latest_version}")
        if latest_version <= current_version:
            return False

        self.logger.info(f"Updating yt-dlp to {latest_version}")
        result = await self.dependencies.install_or_update_yt_dlp()
        if not result['success']:
            self.logger.warning(f"yt-dlp update failed: {result['error']}")
        return result['success']
