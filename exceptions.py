"""
Custom exception hierarchy for the pre-order backend.

Every error the API deliberately returns to a client is raised as a
PreorderServiceError subclass and rendered by the handler registered in
main.py as::

    {"success": false, "message": "...", "error": "<ERROR_CODE>"}

Exception Hierarchy:
    PreorderServiceError (base)
    ├── ValidationError            400
    ├── AuthenticationError        401
    ├── AuthorizationError         403
    ├── ResourceNotFoundError      404
    ├── ConflictError              409
    ├── RateLimitError             429
    ├── DatabaseError              500
    └── StorageServiceError        500

Usage:
    from exceptions import ValidationError, ConflictError

    raise ValidationError("Retailer is required", error_code="MISSING_RETAILER")
    raise ConflictError("This receipt has already been used", error_code="DUPLICATE_RECEIPT")
"""

from typing import Optional, Dict, Any


class PreorderServiceError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Human-readable error message (safe to show to clients)
        error_code: Machine-readable code returned in the ``error`` field
        detail: Optional dict with additional error context
        status_code: HTTP status code used when rendering the error
    """

    default_error_code = "INTERNAL_SERVER_ERROR"
    default_status_code = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.detail = detail
        self.status_code = status_code or self.default_status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the API error body."""
        result: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.error_code,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


class ValidationError(PreorderServiceError):
    """
    Raised when input validation fails.

    Examples:
        raise ValidationError("Receipt file is required", error_code="MISSING_FILE")
        raise ValidationError("Invalid book format", error_code="INVALID_FORMAT")
    """

    default_error_code = "INVALID_REQUEST"
    default_status_code = 400


class AuthenticationError(PreorderServiceError):
    """Raised when a request has no valid session."""

    default_error_code = "UNAUTHORIZED"
    default_status_code = 401


class AuthorizationError(PreorderServiceError):
    """Raised when the caller lacks permission for an action."""

    default_error_code = "FORBIDDEN"
    default_status_code = 403


class ResourceNotFoundError(PreorderServiceError):
    """
    Raised when a requested resource doesn't exist.

    Examples:
        raise ResourceNotFoundError("Receipt not found", error_code="RECEIPT_NOT_FOUND")
    """

    default_error_code = "NOT_FOUND"
    default_status_code = 404


class ConflictError(PreorderServiceError):
    """
    Raised when a request conflicts with stored state.

    Duplicate receipts, exhausted codes and illegal state transitions all
    end up here.
    """

    default_error_code = "CONFLICT"
    default_status_code = 409


class RateLimitError(PreorderServiceError):
    """
    Raised when rate limit is exceeded.

    Examples:
        raise RateLimitError("Too many uploads", retry_after=1800)
    """

    default_error_code = "RATE_LIMIT_EXCEEDED"
    default_status_code = 429

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ):
        if retry_after and detail is None:
            detail = {"retry_after": retry_after}
        elif retry_after and detail:
            detail["retry_after"] = retry_after

        super().__init__(message, error_code=error_code, detail=detail)
        self.retry_after = retry_after


class DatabaseError(PreorderServiceError):
    """Raised when database operations fail."""

    default_status_code = 500


class StorageServiceError(PreorderServiceError):
    """
    Raised when the storage backend (S3, R2, disk) fails.

    Examples:
        raise StorageServiceError("Failed to upload file")
    """

    default_status_code = 500

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        detail = dict(detail or {})
        detail.setdefault("service", "storage")
        super().__init__(message, error_code=error_code, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        # Storage internals stay server-side
        return {
            "success": False,
            "message": "An unexpected error occurred. Please try again later.",
            "error": self.error_code,
        }
