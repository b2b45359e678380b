"""Structured errors for memserve."""
#
from enum import Enum
from typing import Dict, Any, Optional
# PURPOSE:
# One exception type with an error code, so the HTTP layer, the refresh loop
# and the CLI can all decide what to do from the code alone.
#
# ERROR CODE FORMAT:
# - SCAN_XXX: Directory traversal / reconcile errors
# - FILE_XXX: Per-file read errors
# - HTTP_XXX: Request outcomes that are not faults (miss, rate limit)
# - CONFIG_XXX: Configuration errors
# - TLS_XXX: Certificate errors
#
# USAGE:
#   from memserve.errors import MemserveError, ErrorCode
#
#   raise MemserveError(
#       ErrorCode.SCAN_WALK_FAILED,
#       "Cannot list directory",
#       details={"path": "assets/img"}
#   )
#
class ErrorCode(Enum):
    # Scan Errors
    SCAN_ROOT_UNREADABLE = "SCAN_001"
    SCAN_WALK_FAILED = "SCAN_002"

    # File Errors
    FILE_READ_FAILED = "FILE_001"
    FILE_CHANGED_DURING_READ = "FILE_002"

    # Request outcomes
    CACHE_MISS = "HTTP_001"
    RATE_LIMITED = "HTTP_002"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_MISSING_REQUIRED = "CONFIG_002"

    # TLS Errors
    TLS_CERT_INVALID = "TLS_001"
    TLS_CERT_NOT_FOUND = "TLS_002"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class MemserveError(Exception):
    """
    Base exception for memserve with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "SCAN_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code for API responses
    """

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.SCAN_ROOT_UNREADABLE: 500,
        ErrorCode.SCAN_WALK_FAILED: 500,

        ErrorCode.FILE_READ_FAILED: 500,
        ErrorCode.FILE_CHANGED_DURING_READ: 500,

        ErrorCode.CACHE_MISS: 404,         # Not Found
        ErrorCode.RATE_LIMITED: 429,       # Too Many Requests

        ErrorCode.CONFIG_INVALID: 500,
        ErrorCode.CONFIG_MISSING_REQUIRED: 500,

        ErrorCode.TLS_CERT_INVALID: 500,
        ErrorCode.TLS_CERT_NOT_FOUND: 500,

        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(code, 500)

        # Build exception message with code for easy debugging
        super().__init__(f"[{code.value}] {message}")

    @property
    def is_client_visible(self) -> bool:
        """Whether the message may be shown to a network caller as-is."""
        return self.http_status < 500

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for logging / JSON serialization.

        Returns:
            Dictionary with code, message, details, and http_status
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status
        }


class FileChangedDuringRead(MemserveError):
    """A file's modification time moved while its content was being read."""

    def __init__(self, path: str):
        super().__init__(
            ErrorCode.FILE_CHANGED_DURING_READ,
            f"File changed while being read: {path}",
            details={"path": path},
        )


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> MemserveError:
    """
    Convert a generic exception to a MemserveError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while listing assets/")

    Returns:
        MemserveError with appropriate code and message
    """
    if isinstance(error, MemserveError):
        return error

    error_type = type(error).__name__

    if isinstance(error, OSError):
        code = ErrorCode.FILE_READ_FAILED
    else:
        code = ErrorCode.SYSTEM_INTERNAL_ERROR

    message = str(error)
    if context:
        message = f"{context}: {message}"

    return MemserveError(
        code=code,
        message=message,
        details={
            "original_type": error_type,
            "original_message": str(error)
        }
    )


__all__ = ["ErrorCode", "MemserveError", "FileChangedDuringRead", "handle_error"]
