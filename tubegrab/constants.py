"""
Defines service-wide constants, default paths, and subprocess settings.

This module centralizes the locations used for downloads and binaries, the
release URLs for yt-dlp, and the media types served for finished artifacts.
"""

import sys
import subprocess
from pathlib import Path

# --- Default Paths ---
# Everything lives under /tmp so the service works on read-only cloud images.
DEFAULT_DOWNLOAD_DIR: Path = Path('/tmp/downloads')
DEFAULT_BIN_DIR: Path = Path('/tmp/bin')

# Per-user location for the optional config file and log files.
USER_DATA_DIR: Path = Path.home() / '.tubegrab'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- yt-dlp Provisioning ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
YT_DLP_RELEASES_API_URL = 'https://api.github.com/repos/yt-dlp/yt-dlp/releases/latest'
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
REQUEST_TIMEOUTS = (10, 60)  # (connect_timeout, read_timeout)

# --- Conversion ---
SUPPORTED_FORMATS = ('mp3', 'mp4')
DEFAULT_QUALITY = {'mp3': '192', 'mp4': '720'}
FALLBACK_TITLE = 'video'

# Files yt-dlp leaves behind while it is still working on an artifact.
PARTIAL_SUFFIXES = {'.part', '.ytdl', '.temp', '.tmp'}

MEDIA_TYPES = {
    '.mp3': 'audio/mpeg',
    '.mp4': 'video/mp4',
    '.m4a': 'audio/mp4',
    '.webm': 'video/webm',
    '.mkv': 'video/x-matroska',
    '.opus': 'audio/ogg',
    '.ogg': 'audio/ogg',
}
