"""
Shared error handling for the Secrets Portal core.

Every error raised by the core derives from PortalError and carries a
stable code plus the HTTP status the transport layer should map it to.
"""

from typing import Any, Dict, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PortalError(Exception):
    """Base exception for the Secrets Portal core."""

    http_status = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )


class ValidationError(PortalError):
    """Malformed caller input."""

    http_status = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class Unauthenticated(PortalError):
    """No verified identity on the request."""

    http_status = 401

    def __init__(self, message: str = "Missing user identity", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHORIZED", message, details)


class AccessDenied(PortalError):
    """Permission gate failure."""

    http_status = 403

    def __init__(self, app: str, env: str, required_level: str):
        self.app = app
        self.env = env
        self.required_level = required_level
        super().__init__(
            "FORBIDDEN",
            f"{required_level.capitalize()} access denied to {app} {env} secrets",
            {"app": app, "env": env, "required_level": required_level},
        )


class NotFound(PortalError):
    """Missing record or entry."""

    http_status = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConditionFailed(PortalError):
    """A conditional write was rejected by the store."""

    http_status = 409

    def __init__(self, message: str = "Conditional check failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONDITION_FAILED", message, details)


class Throttled(PortalError):
    """Transient store pressure (provisioned throughput or rate limit)."""

    http_status = 503

    def __init__(self, message: str = "Request throttled", details: Optional[Dict[str, Any]] = None):
        super().__init__("THROTTLED", message, details)


class OperationFailed(PortalError):
    """A retried operation exhausted its attempt budget."""

    http_status = 503

    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException] = None):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            "OPERATION_FAILED",
            f"{label} failed after {attempts} attempts",
            {"label": label, "attempts": attempts},
        )


class ExternalServiceError(PortalError):
    """Vault or notification sink failure."""

    http_status = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)
