"""
Shared error handling for the layout entitlement service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class LayoutServiceException(Exception):
    """Base exception for layout service errors."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(LayoutServiceException):
    """Invalid input, raised before any lookup takes place."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(LayoutServiceException):
    """Requested record does not exist or is retired."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class StoreError(LayoutServiceException):
    """Backing store failures."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Store operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_ERROR", f"{operation}: {message}", details)
        self.operation = operation


class ComputationError(LayoutServiceException):
    """Layout computation failed; no partial layout is produced."""

    status_code = 500

    def __init__(self, message: str = "Layout computation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("COMPUTATION_FAILED", message, details)
