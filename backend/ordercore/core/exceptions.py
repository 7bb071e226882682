"""
Order Core Exception Hierarchy

Structured exception classes for the order state machine, the
cancellation/return workflows and the notification dispatcher.
All exceptions include code, message, and details for audit trail and
debugging.

Exception Hierarchy:
    OrderCoreError
    ├── NotFoundError
    ├── InvalidTransitionError
    ├── ConflictError
    ├── ForbiddenError
    ├── OrderValidationError
    └── RecipientNotFoundError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class OrderCoreError(Exception):
    """
    Base exception for all order core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "ORDER_CORE_ERROR"
    default_severity: str = "P2"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class NotFoundError(OrderCoreError):
    """Referenced order, request, return or notification does not exist."""
    default_code = "NOT_FOUND"
    default_severity = "P3"
    http_status = 404

    def __init__(self, resource: str, resource_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"resource": resource, "resource_id": resource_id})
        super().__init__(f"{resource} {resource_id} not found", details=details, **kwargs)


class InvalidTransitionError(OrderCoreError):
    """Target status is unreachable from the current status. Never retried automatically."""
    default_code = "INVALID_TRANSITION"
    default_severity = "P3"
    http_status = 409

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({"current": current, "target": target})
        super().__init__(message, details=details, **kwargs)


class ConflictError(OrderCoreError):
    """A guarded update lost a race. Caller must re-read before retrying."""
    default_code = "CONFLICT"
    default_severity = "P3"
    http_status = 409


class ForbiddenError(OrderCoreError):
    """Actor lacks ownership or role for the requested operation."""
    default_code = "FORBIDDEN"
    default_severity = "P2"
    http_status = 403


class OrderValidationError(OrderCoreError):
    """Malformed input (blank reason, incomplete address, bad totals)."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"
    http_status = 422

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class RecipientNotFoundError(OrderCoreError):
    """Notification recipient does not exist. Logged and swallowed by callers."""
    default_code = "RECIPIENT_NOT_FOUND"
    default_severity = "P3"
    http_status = 404
