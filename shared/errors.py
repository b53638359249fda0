"""
Shared error handling for the RBAC service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from .logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RbacError(Exception):
    """Base exception for RBAC services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RbacError):
    """Invalid input; nothing was applied."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(ValidationError):
    """A write referenced an entity that does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "NOT_FOUND"


class ConflictError(RbacError):
    """Existing state prevents the operation."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ForbiddenError(RbacError):
    """Operation not permitted on this entity (e.g. system roles)."""

    status_code = 403

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class GraphIntegrityError(RbacError):
    """Role inheritance graph would become cyclic or unresolvable."""

    status_code = 422

    def __init__(self, code: str = "GRAPH_INTEGRITY_ERROR", message: str = "Role graph integrity error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class CircularInheritanceError(GraphIntegrityError):
    """Adding a parent edge would create a cycle."""

    def __init__(self, message: str = "Circular role inheritance", details: Optional[Dict[str, Any]] = None):
        super().__init__("CIRCULAR_INHERITANCE", message, details)


class InheritanceDepthError(GraphIntegrityError):
    """Role inheritance chain is deeper than the configured bound."""

    def __init__(self, message: str = "Maximum role inheritance depth exceeded",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("INHERITANCE_DEPTH_EXCEEDED", message, details)
