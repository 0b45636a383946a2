"""
Error taxonomy.

Every error raised toward a caller is an HTTPException carrying a stable
machine-readable code next to the human-readable message:

    {"detail": {"code": "session_not_found", "message": "Session not found"}}
"""

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base class for errors with a stable error code."""

    code = "error"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal error"

    def __init__(self, detail: str = None):
        self.message = detail or self.default_message
        super().__init__(
            status_code=self.status_code_default,
            detail={"code": self.code, "message": self.message},
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(AppError):
    """Exception raised when a resource is not found."""

    code = "not_found"
    status_code_default = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class TenantNotFoundError(NotFoundError):
    code = "tenant_not_found"
    default_message = "Organization not found"


class RoomNotFoundError(NotFoundError):
    code = "room_not_found"
    default_message = "Room not found"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"
    default_message = "Session not found"


class ForbiddenError(AppError):
    """Exception raised when access is forbidden. The message is the denial reason."""

    code = "forbidden"
    status_code_default = status.HTTP_403_FORBIDDEN
    default_message = "Access forbidden"

    @property
    def reason(self) -> str:
        return self.message


class UnauthorizedError(AppError):
    """Exception raised when authentication fails."""

    code = "unauthorized"
    status_code_default = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class SignatureInvalidError(UnauthorizedError):
    """Webhook body does not match the X-Line-Signature header."""

    code = "signature_invalid"
    default_message = "Invalid webhook signature"


class BadRequestError(AppError):
    """Exception raised for bad requests."""

    code = "bad_request"
    status_code_default = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class ConflictError(AppError):
    """Request conflicts with current state (last owner, duplicate membership)."""

    code = "conflict"
    status_code_default = status.HTTP_409_CONFLICT
    default_message = "Conflict with current state"


class SessionNotActiveError(ConflictError):
    code = "session_not_active"
    default_message = "Session is not active"


class QuotaExceededError(AppError):
    """Plan quota exhausted. Raised loudly, never swallowed."""

    code = "quota_exceeded"
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Organization quota exceeded"


class StorageError(AppError):
    """A write to the document store failed."""

    code = "storage_error"
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Storage write failed"
