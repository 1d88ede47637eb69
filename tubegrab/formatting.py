"""Small helpers that turn raw yt-dlp values and user input into display-safe strings."""
import re
import mimetypes
import urllib.parse
from pathlib import Path
from typing import Any, Optional

from .constants import FALLBACK_TITLE, MEDIA_TYPES
from .exceptions import InvalidRequestError

_UNSAFE_TITLE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
MAX_TITLE_LENGTH = 80


def sanitize_title(title: Optional[str]) -> str:
    """Strips characters that are unsafe in filenames and caps the length."""
    cleaned = _UNSAFE_TITLE_CHARS.sub('', title or '')
    cleaned = re.sub(r'\s+', ' ', cleaned).strip()[:MAX_TITLE_LENGTH].strip()
    return cleaned or FALLBACK_TITLE


def format_duration(seconds: Any) -> str:
    """Formats a duration as H:MM:SS, or M:SS when shorter than an hour."""
    try:
        total = int(float(seconds or 0))
    except (TypeError, ValueError):
        total = 0
    if total <= 0:
        return '0:00'
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_views(count: Any) -> str:
    """Abbreviates a view count with a K/M/B suffix."""
    try:
        n = int(count or 0)
    except (TypeError, ValueError):
        return '0'
    for threshold, suffix in ((1e9, 'B'), (1e6, 'M'), (1e3, 'K')):
        if n >= threshold:
            return f"{n / threshold:.1f}{suffix}"
    return str(n)


def validate_media_url(url: Optional[str]) -> str:
    """
    Checks that `url` looks like something yt-dlp can fetch.

    Raises:
        InvalidRequestError: If the URL is empty or not an absolute http(s) URL.
    """
    url = (url or '').strip()
    if not url:
        raise InvalidRequestError("URL required")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidRequestError("Unsupported URL")
    return url


def content_disposition(filename: str) -> str:
    """Builds an attachment header with an ASCII fallback and an RFC 5987 UTF-8 name."""
    ascii_name = filename.encode('ascii', 'ignore').decode('ascii').replace('"', '').strip()
    if not ascii_name or ascii_name.startswith('.'):
        ascii_name = f"download{ascii_name}"
    quoted = urllib.parse.quote(filename, safe='')
    return f'attachment; filename="{ascii_name}"; filename*=UTF-8\'\'{quoted}'


def guess_media_type(filename: str) -> str:
    """Returns the Content-Type for an artifact based on its extension."""
    suffix = Path(filename).suffix.lower()
    if suffix in MEDIA_TYPES:
        return MEDIA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or 'application/octet-stream'
