"""
GOMFLOW Error Handling

Typed errors carrying a stable code, a user-facing message and debugging
context. Business outcomes (no match, ambiguous match, transition refused)
are returned as structured results; these exceptions mark failures and
the boundaries where a caller must decide whether to retry.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_CONFIG = "INVALID_CONFIG"

    # Auth errors (401/403/404)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"

    # Workflow errors
    INVALID_TRANSITION = "INVALID_TRANSITION"
    AMBIGUOUS_MATCH = "AMBIGUOUS_MATCH"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    QUEUE_EXHAUSTED = "QUEUE_EXHAUSTED"

    # External service errors
    TRANSIENT_EXTERNAL = "TRANSIENT_EXTERNAL"
    DATABASE_ERROR = "DATABASE_ERROR"


class GomflowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class InvalidInputError(GomflowError):
    """Malformed input. Never retried."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_INPUT,
            message="Invalid input",
            detail=detail,
            context={"field": field} if field else None,
        )


class SignatureError(GomflowError):
    """Webhook signature missing or invalid."""

    def __init__(self, provider: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_SIGNATURE,
            message=f"Invalid {provider} webhook signature",
            detail=detail,
            context={"provider": provider},
        )


class ConfigError(GomflowError):
    """Error in configuration."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_CONFIG,
            message=f"Invalid configuration for '{field}'",
            detail=detail,
            context={"field": field}
        )


class ForbiddenError(GomflowError):
    def __init__(self, detail: str):
        super().__init__(code=ErrorCode.FORBIDDEN, message="Not allowed", detail=detail)


class NotFoundError(GomflowError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} not found",
            context={"resource": resource, "id": resource_id},
        )


class TransientExternalError(GomflowError):
    """External dependency failed in a way that is worth retrying."""

    def __init__(self, service: str, detail: str):
        super().__init__(
            code=ErrorCode.TRANSIENT_EXTERNAL,
            message=f"{service} temporarily unavailable",
            detail=detail,
            context={"service": service},
        )


class ExtractionError(GomflowError):
    """The extraction provider rejected the request permanently."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.EXTRACTION_FAILED,
            message="Payment screenshot extraction failed",
            detail=detail,
        )


class InvalidTransitionError(GomflowError):
    """Raised when an illegal submission state change is attempted."""

    def __init__(self, submission_id: str, from_state: str, to_state: str):
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Invalid transition: {from_state} -> {to_state}",
            context={
                "submission_id": submission_id,
                "from_state": from_state,
                "to_state": to_state,
            },
        )
        self.submission_id = submission_id
        self.from_state = from_state
        self.to_state = to_state


class AmbiguousMatchError(GomflowError):
    """Two or more submissions scored within the tie epsilon of each other."""

    def __init__(self, submission_ids: list, scores: list):
        super().__init__(
            code=ErrorCode.AMBIGUOUS_MATCH,
            message="Payment matches more than one submission",
            context={"submission_ids": submission_ids, "scores": scores},
        )


class QueueExhaustedError(GomflowError):
    """An event used up its retry budget and moved to the dead-letter set."""

    def __init__(self, event_id: str, attempts: int, last_error: str):
        super().__init__(
            code=ErrorCode.QUEUE_EXHAUSTED,
            message=f"Payment event {event_id} dead-lettered after {attempts} attempts",
            detail=last_error,
            context={"event_id": event_id, "attempts": attempts},
        )


STATUS_MAP = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.INVALID_SIGNATURE: 400,
    ErrorCode.INVALID_CONFIG: 500,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.AMBIGUOUS_MATCH: 409,
    ErrorCode.EXTRACTION_FAILED: 422,
    ErrorCode.QUEUE_EXHAUSTED: 500,
    ErrorCode.TRANSIENT_EXTERNAL: 503,
    ErrorCode.DATABASE_ERROR: 500,
}


def status_for(error: GomflowError) -> int:
    return STATUS_MAP.get(error.code, 500)
