"""
Defines custom exceptions used throughout the service.

These exceptions allow for more specific error handling than built-in exceptions.
The HTTP layer maps each of them onto a status code.
"""

class DownloadCancelledError(Exception):
    """Custom exception for a cancelled yt-dlp provisioning download."""
    pass

class URLExtractionError(Exception):
    """Custom exception for metadata extraction failures."""
    pass

class JobExecutionError(Exception):
    """Raised inside the job runner when a conversion cannot produce an artifact."""
    pass

class DependencyError(Exception):
    """Raised when yt-dlp is unavailable and could not be provisioned."""
    pass

class InvalidRequestError(Exception):
    """Custom exception for malformed client input."""
    pass

class QueueFullError(Exception):
    """Raised when the pending queue has reached its configured ceiling."""
    pass

class RateLimitExceeded(Exception):
    """Raised when a client exceeds its request allowance for the current window."""

    def __init__(self, retry_after: float):
        super().__init__("Too many requests. Please try again later.")
        self.retry_after = retry_after
