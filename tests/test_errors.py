"""Tests for the error taxonomy and error message sanitization."""

import pytest

from api.errors import (
    DownloadError,
    ERROR_MESSAGES,
    ForbiddenError,
    InternalError,
    NotFoundError,
    QueueingError,
    TranscodeError,
    ValidationError,
    job_error_text,
    sanitize_error_message,
    truncate_error,
)


class TestErrorTaxonomy:
    """Tests for status codes and messages carried by each error type."""

    @pytest.mark.parametrize(
        "error_cls,status_code",
        [
            (ValidationError, 400),
            (ForbiddenError, 403),
            (NotFoundError, 404),
            (QueueingError, 503),
            (DownloadError, 502),
            (TranscodeError, 500),
            (InternalError, 500),
        ],
    )
    def test_status_codes(self, error_cls, status_code):
        assert error_cls.status_code == status_code

    def test_message_defaults_to_public_message(self):
        """Test errors raised without a message use their public text."""
        assert NotFoundError().message == "Not found."
        assert str(QueueingError()) == "Failed to queue job."

    def test_internal_error_hides_detail(self):
        """Test InternalError keeps the detail in str() but never in .message."""
        error = InternalError("KeyError: 'secret_column'")
        assert error.message == InternalError.public_message
        assert "secret_column" in str(error)

    def test_download_error_retryable_flag(self):
        assert DownloadError("boom").retryable is True
        assert DownloadError("gone", retryable=False).retryable is False


class TestTruncateError:
    """Tests for truncate_error."""

    def test_short_text_unchanged(self):
        assert truncate_error("short", 10) == "short"

    def test_long_text_marked(self):
        result = truncate_error("x" * 50, 20)
        assert len(result) == 20
        assert result.endswith("...")

    def test_empty_and_none(self):
        assert truncate_error(None, 10) == ""
        assert truncate_error("", 10) == ""

    def test_tiny_limit_hard_cut(self):
        assert truncate_error("abcdef", 2) == "ab"


class TestSanitizeErrorMessage:
    """Tests for sanitize_error_message."""

    def test_none_returns_none(self):
        assert sanitize_error_message(None) is None

    def test_timeout_is_generic(self):
        assert sanitize_error_message("ffmpeg timed out after 300s") == ERROR_MESSAGES["timeout"]

    def test_ffmpeg_detail_hidden(self):
        assert sanitize_error_message("ffmpeg 720p exited with code 1") == ERROR_MESSAGES["transcode_failed"]

    def test_database_detail_hidden(self):
        assert sanitize_error_message("UNIQUE constraint failed: jobs.id") == ERROR_MESSAGES["database"]

    def test_paths_hidden(self):
        assert sanitize_error_message("cannot open /tmp/vforge-work/job-1/source") == ERROR_MESSAGES["general"]

    def test_safe_short_message_kept(self):
        assert sanitize_error_message("Input source not found", log_original=False) == "Input source not found"


class TestJobErrorText:
    """Tests for the error_text stored on FAILED jobs."""

    def test_typed_error_keeps_message(self):
        assert job_error_text(DownloadError("Source returned HTTP 404")) == "Source returned HTTP 404"

    def test_typed_error_is_sanitized(self):
        text = job_error_text(TranscodeError("Transcode to 720p failed: ffmpeg 720p exited with code 1"))
        assert text == ERROR_MESSAGES["transcode_failed"]

    def test_unexpected_error_is_generic(self):
        """Test untyped exceptions never leak their text."""
        assert job_error_text(KeyError("internal_field")) == InternalError.public_message

    def test_internal_error_is_generic(self):
        assert job_error_text(InternalError("stack trace here")) == InternalError.public_message
