"""
Shared error handling for the Hermes webhook relay.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from hermes_shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RelayException(Exception):
    """Base exception for relay errors."""

    status_code = 500

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


class ConfigError(RelayException):
    """Invalid configuration. Fatal at startup."""

    def __init__(self, message: str, entry: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.entry = entry
        if entry:
            message = f"{entry}: {message}"
        super().__init__("CONFIG_ERROR", message, details)


class TemplateError(ConfigError):
    """Template could not be compiled or registered."""

    def __init__(self, template_id: str, message: str):
        self.template_id = template_id
        super().__init__(message, entry=f"templates[{template_id}]")
        self.code = "TEMPLATE_ERROR"


class RenderError(RelayException):
    """Template rendering failed for one request."""

    status_code = 422

    def __init__(self, template_id: str, message: str):
        self.template_id = template_id
        super().__init__(
            "RENDER_ERROR",
            message,
            {"template": template_id}
        )


class DispatchError(RelayException):
    """A single delivery attempt to a target failed."""

    status_code = 502

    NETWORK = "network"
    TIMEOUT = "timeout"
    STATUS = "status"

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        self.kind = kind
        self.response_status = status_code
        details: Dict[str, Any] = {"kind": kind}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__("DISPATCH_ERROR", message, details)


class LimiterRejection(RelayException):
    """Admission denied because the concurrency bound is reached."""

    status_code = 503

    def __init__(self, reason: str = "overloaded", limit: Optional[int] = None):
        self.reason = reason
        details: Dict[str, Any] = {"reason": reason}
        if limit is not None:
            details["limit"] = limit
        super().__init__("OVERLOADED", "Gateway is not accepting new work", details)


class EndpointNotFound(RelayException):
    """No endpoint is registered for the method and path."""

    status_code = 404

    def __init__(self, method: str, path: str):
        super().__init__(
            "NOT_FOUND",
            "Endpoint not found",
            {"method": method, "path": path}
        )


class InvalidPayload(RelayException):
    """Inbound body could not be parsed."""

    status_code = 400

    def __init__(self, message: str = "Invalid JSON payload"):
        super().__init__("INVALID_PAYLOAD", message)
