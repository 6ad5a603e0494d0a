"""Custom exception classes for s3-unzip.

Every stage of the pipeline raises its own error type so callers can tell
which stage (and which archive entry) ended a run.
"""

from typing import Optional, Dict, Any


class S3UnzipError(Exception):
    """Base exception for all s3-unzip errors."""

    error_code: str = "ERR000"  # Override in subclasses

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        """
        Initialize s3-unzip exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
            error_code: Optional error code override
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def __str__(self) -> str:
        """Return string representation with error code and details."""
        parts = [f"[{self.error_code}] {self.message}"]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)


def _describe_original(
    details: Dict[str, Any], original_error: Optional[BaseException]
) -> None:
    if original_error is not None:
        details['original_error'] = str(original_error)
        details['error_type'] = type(original_error).__name__


class ValidationError(S3UnzipError):
    """Raised when the options handed to the pipeline are invalid.

    Always raised before any network or filesystem access.

    Examples:
        - Missing access_key, secret_key or bucket_name
        - entry_filter that is not callable
        - Out-of-range part_size or max_concurrency
    """

    error_code = "CFG001"

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        config_path: Optional[str] = None,
    ):
        """
        Initialize validation error.

        Args:
            message: Description of validation failure
            key: Option that caused the error
            config_path: Path to config file that failed validation
        """
        details = {}
        if config_path:
            details['config_path'] = config_path
        if key:
            details['config_key'] = key
        super().__init__(message, details)
        self.key = key


class ExtractError(S3UnzipError):
    """Raised when the archive cannot be decoded.

    Examples:
        - Input is not a zip archive
        - Truncated local header or member data
        - Wrong or missing password for an encrypted member
    """

    error_code = "EXT001"

    def __init__(
        self,
        message: str,
        entry_path: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        details: Dict[str, Any] = {}
        if entry_path:
            details['entry_path'] = entry_path
        _describe_original(details, original_error)
        super().__init__(message, details)
        self.entry_path = entry_path
        self.original_error = original_error


class FilterError(S3UnzipError):
    """Raised when a caller-supplied entry filter fails."""

    error_code = "FLT001"

    def __init__(
        self,
        message: str,
        entry_path: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        details: Dict[str, Any] = {}
        if entry_path:
            details['entry_path'] = entry_path
        _describe_original(details, original_error)
        super().__init__(message, details)
        self.entry_path = entry_path
        self.original_error = original_error


class UploadError(S3UnzipError):
    """Raised when an archive entry cannot be written to the bucket.

    Examples:
        - Access denied on the bucket
        - Transient S3 failures that outlived the client's retries
        - Network connectivity issues
    """

    error_code = "UPL001"

    def __init__(
        self,
        message: str,
        entry_path: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        """
        Initialize upload error.

        Args:
            message: Description of upload failure
            entry_path: Path of the archive entry being uploaded
            key: Destination object key
            original_error: Original exception that caused this error
        """
        details: Dict[str, Any] = {}
        if entry_path:
            details['entry_path'] = entry_path
        if key:
            details['key'] = key
        _describe_original(details, original_error)
        super().__init__(message, details)
        self.entry_path = entry_path
        self.key = key
        self.original_error = original_error


class UploadAbortedError(UploadError):
    """Raised by an in-flight upload that was cancelled because the run failed."""

    error_code = "UPL002"
