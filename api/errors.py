"""
Error taxonomy and helpers for sanitizing error messages.

Every failure the job pipeline can surface is a VForgeError subclass carrying
the HTTP status it maps to. Raw error text (ffmpeg stderr, driver errors,
filesystem paths) is logged server-side but sanitized before it reaches a
client or is stored in a job's error_text.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


class VForgeError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    public_message = "An error occurred while processing your request."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(VForgeError):
    """Bad submission input. Never retried."""

    status_code = 400
    public_message = "Invalid request."


class ForbiddenError(VForgeError):
    """Operation not allowed in the job's current state or for this principal."""

    status_code = 403
    public_message = "Operation not allowed."


class NotFoundError(VForgeError):
    status_code = 404
    public_message = "Not found."


class QueueingError(VForgeError):
    """Publishing to the durable queue failed."""

    status_code = 503
    public_message = "Failed to queue job."


class DownloadError(VForgeError):
    """Fetching the input source failed (network problem, missing source, timeout)."""

    status_code = 502
    public_message = "Failed to download input source."

    def __init__(self, message: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class TranscodeError(VForgeError):
    """Transcode engine failure for a specific format or auxiliary asset."""

    status_code = 500
    public_message = "Video transcoding failed."


class InternalError(VForgeError):
    """Unexpected failure. The detail is logged, never returned."""

    status_code = 500
    public_message = "Internal processing error."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message)
        # Callers only ever see the generic text
        self.message = self.public_message


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",  # Home directory paths
    r"/tmp/\w+",  # Temp paths
    r"/var/\w+/",  # Var paths
    r"line \d+",  # Line numbers in stack traces
    r'File "[^"]+\.py"',  # Python file paths
    r"Permission denied",
    r"No such file or directory",
    r"UNIQUE constraint failed",
    r"sqlite3?\.",
    r"asyncpg\.",
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "timeout": "Video processing timed out.",
    "ffprobe": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "no_video_stream": "No video stream found in the input.",
    "transcode_failed": "Video transcoding failed.",
    "download": "Failed to download input source.",
    "source_not_found": "Input source not found.",
    "database": "A database error occurred.",
    "general": "An error occurred while processing the job.",
}


def truncate_error(text: Optional[str], max_length: int) -> str:
    """Truncate an error string to max_length characters, marking the cut."""
    if not text:
        return ""
    text = text.strip()
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "job_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timed out" in error_lower or "timeout" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "no video stream" in error_lower:
        return ERROR_MESSAGES["no_video_stream"]

    if "ffmpeg" in error_lower:
        return ERROR_MESSAGES["transcode_failed"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are considered safe
    if len(error) < 200 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


def job_error_text(exc: BaseException, context: str = "") -> str:
    """
    Build the error_text stored on a FAILED job.

    Typed pipeline errors keep their (sanitized) message. Anything else is an
    unexpected failure and collapses to the generic internal message.
    """
    if isinstance(exc, InternalError) or not isinstance(exc, VForgeError):
        logger.error(f"Unexpected failure ({context}): {exc!r}")
        return InternalError.public_message
    return sanitize_error_message(str(exc), log_original=False) or exc.public_message
