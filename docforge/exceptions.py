"""Custom exception hierarchy for DocForge."""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standardized error codes for API responses and pipeline results."""

    # Cache errors
    CACHE_ENTRY_NOT_FOUND = "CACHE_ENTRY_NOT_FOUND"
    CACHE_CORRUPTED = "CACHE_CORRUPTED"
    CACHE_LOCK_TIMEOUT = "CACHE_LOCK_TIMEOUT"
    CACHE_COMMIT_FAILED = "CACHE_COMMIT_FAILED"

    # Generation errors
    GENERATION_FAILED = "GENERATION_FAILED"
    BACKEND_NOT_CONFIGURED = "BACKEND_NOT_CONFIGURED"

    # Pipeline errors
    STAGE_FAILED = "STAGE_FAILED"
    PIPELINE_FAILED = "PIPELINE_FAILED"
    PIPELINE_CANCELLED = "PIPELINE_CANCELLED"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Database errors
    DATABASE_ERROR = "DATABASE_ERROR"


class DocForgeException(Exception):
    """
    Base exception for all DocForge errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            status_code: HTTP status code to return
            details: Optional additional context/details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class ValidationError(DocForgeException):
    """Validation failed for user input."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class CacheEntryNotFoundError(DocForgeException):
    """No cache entry exists for the repository."""

    def __init__(self, repo_id: str):
        super().__init__(
            f"No cache entry for repository: {repo_id}",
            ErrorCode.CACHE_ENTRY_NOT_FOUND,
            status_code=404,
            details={"repo_id": repo_id}
        )


class CacheCorruptionError(DocForgeException):
    """A persisted cache entry could not be decoded or failed integrity checks."""

    def __init__(self, repo_id: str, reason: str):
        super().__init__(
            f"Cache entry for {repo_id} is corrupt: {reason}",
            ErrorCode.CACHE_CORRUPTED,
            status_code=500,
            details={"repo_id": repo_id, "reason": reason}
        )


class CacheLockTimeout(DocForgeException):
    """The per-repository cache lock could not be acquired in time."""

    def __init__(self, repo_id: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout}s waiting for cache lock on {repo_id}",
            ErrorCode.CACHE_LOCK_TIMEOUT,
            status_code=409,
            details={"repo_id": repo_id, "timeout": timeout}
        )


class CacheCommitError(DocForgeException):
    """Writing a cache entry failed; the previous entry is left intact."""

    def __init__(self, repo_id: str, original_error: Optional[Exception] = None):
        details = {"repo_id": repo_id}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            f"Failed to commit cache entry for {repo_id}",
            ErrorCode.CACHE_COMMIT_FAILED,
            status_code=500,
            details=details
        )


class GenerationError(DocForgeException):
    """A generation backend call failed or returned an unusable response."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(
            message,
            ErrorCode.GENERATION_FAILED,
            status_code=502,
            details={"retryable": retryable}
        )
        self.retryable = retryable


class BackendNotConfiguredError(DocForgeException):
    """No generation model is configured."""

    def __init__(self, message: str = "Generation backend is not configured (set GENERATION_MODEL)"):
        super().__init__(
            message,
            ErrorCode.BACKEND_NOT_CONFIGURED,
            status_code=503,
        )


class StageFailedError(DocForgeException):
    """A pipeline stage failed in a way that aborts the whole run."""

    def __init__(self, stage: str, message: str, failures: tuple = ()):
        super().__init__(
            f"Stage '{stage}' failed: {message}",
            ErrorCode.STAGE_FAILED,
            status_code=500,
            details={"stage": stage, "failed_units": [f.key for f in failures]}
        )
        self.stage = stage
        self.failures = failures


class PipelineFailedError(DocForgeException):
    """Raised by ``PipelineResult.raise_for_status`` for a failed run."""

    def __init__(self, stage: Optional[str], message: str):
        super().__init__(
            message,
            ErrorCode.PIPELINE_FAILED,
            status_code=500,
            details={"stage": stage}
        )
        self.stage = stage


class PipelineCancelledError(DocForgeException):
    """Raised when a run observes its cancellation token."""

    def __init__(self, stage: Optional[str] = None):
        super().__init__(
            "Pipeline run was cancelled" + (f" during '{stage}'" if stage else ""),
            ErrorCode.PIPELINE_CANCELLED,
            status_code=499,
            details={"stage": stage}
        )
        self.stage = stage


class DatabaseError(DocForgeException):
    """Database operation failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details = {}
        if original_error:
            details["original_error"] = str(original_error)

        super().__init__(
            message,
            ErrorCode.DATABASE_ERROR,
            status_code=500,
            details=details
        )
