"""Custom exceptions for synchronization and backup operations."""

from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class SyncErrorCode(str, Enum):
    """Error codes surfaced to callers of the sync engine."""
    AUTH_INVALID = "AUTH_INVALID"
    NETWORK_ERROR = "NETWORK_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
    INVALID_FILE_FORMAT = "INVALID_FILE_FORMAT"
    VERSION_MISMATCH = "VERSION_MISMATCH"


class SyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(self, message: str,
                 error_code: SyncErrorCode = SyncErrorCode.NETWORK_ERROR,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = SyncErrorCode(error_code)
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class AuthInvalidError(SyncError):
    """Raised when remote credentials are missing or rejected."""

    def __init__(self, user_id: str, reason: str = "No remote credentials available",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, SyncErrorCode.AUTH_INVALID,
                         {"user_id": user_id, **(details or {})})


class SyncValidationError(SyncError):
    """Raised when a request or a dataset fails validation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, SyncErrorCode.VALIDATION_ERROR, details)


class SyncInProgressError(SyncError):
    """Raised when a sync is requested while another one runs for the user."""

    def __init__(self, user_id: str):
        message = f"A sync is already in progress for user {user_id}"
        super().__init__(message, SyncErrorCode.SYNC_IN_PROGRESS, {"user_id": user_id})


class ConflictDetectedError(SyncError):
    """Raised when a merge restore finds records that differ on both sides."""

    def __init__(self, conflict_count: int, tables: Optional[list] = None):
        message = f"Merge aborted: {conflict_count} conflicting records"
        details = {
            "conflict_count": conflict_count,
            "tables": tables or []
        }
        super().__init__(message, SyncErrorCode.CONFLICT_DETECTED, details)


class VersionMismatchError(SyncError):
    """Raised when an archive was written by an incompatible format version."""

    def __init__(self, expected_version: str, actual_version: Optional[str]):
        message = (f"Unsupported archive format version {actual_version!r}, "
                   f"expected {expected_version!r}")
        details = {
            "expected_version": expected_version,
            "actual_version": actual_version
        }
        super().__init__(message, SyncErrorCode.VERSION_MISMATCH, details)


class InvalidFileFormatError(SyncError):
    """Raised when archive bytes cannot be parsed."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Invalid archive: {reason}", SyncErrorCode.INVALID_FILE_FORMAT, details)


class NetworkError(SyncError):
    """Raised when a remote service cannot be reached."""

    def __init__(self, operation: str, reason: str, details: Optional[Dict[str, Any]] = None):
        message = f"Remote operation {operation} failed: {reason}"
        super().__init__(message, SyncErrorCode.NETWORK_ERROR,
                         {"operation": operation, **(details or {})})


class QuotaExceededError(SyncError):
    """Raised when the remote service rejects a call for quota or rate limits."""

    def __init__(self, operation: str, reason: str, details: Optional[Dict[str, Any]] = None):
        message = f"Remote quota exceeded during {operation}: {reason}"
        super().__init__(message, SyncErrorCode.QUOTA_EXCEEDED,
                         {"operation": operation, **(details or {})})


class PermissionDeniedError(SyncError):
    """Raised when the remote service refuses access to a resource."""

    def __init__(self, operation: str, reason: str, details: Optional[Dict[str, Any]] = None):
        message = f"Permission denied during {operation}: {reason}"
        super().__init__(message, SyncErrorCode.PERMISSION_DENIED,
                         {"operation": operation, **(details or {})})


_AUTH_MARKERS = ("invalid_grant", "unauthorized", "401", "invalid credentials", "token")
_QUOTA_MARKERS = ("quota", "rate limit", "ratelimit", "429", "too many requests")
_PERMISSION_MARKERS = ("permission", "forbidden", "403", "insufficient")


def wrap_remote_error(error: Exception, operation: str, user_id: str = "") -> SyncError:
    """Classify an adapter failure into a SyncError.

    SyncErrors raised by adapters pass through untouched. Anything else is
    classified by its message; the original error is kept in the details.

    Args:
        error: Exception raised by a remote adapter
        operation: Name of the remote operation that failed
        user_id: User the operation ran for

    Returns:
        SyncError to raise in place of the original error
    """
    if isinstance(error, SyncError):
        return error

    reason = str(error) or type(error).__name__
    lowered = reason.lower()
    details = {"cause": reason, "cause_type": type(error).__name__}

    if any(marker in lowered for marker in _QUOTA_MARKERS):
        return QuotaExceededError(operation, reason, details)
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return PermissionDeniedError(operation, reason, details)
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthInvalidError(user_id, f"Remote credentials rejected during {operation}", details)
    return NetworkError(operation, reason, details)
