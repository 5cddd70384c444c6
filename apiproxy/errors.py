"""Exception hierarchy for the forwarding endpoint. Each error maps to an HTTP status."""
from typing import Optional


class ProxyError(Exception):
    """Base exception for all proxy errors."""

    status_code = 500


class BadRequest(ProxyError):
    """Query parameters or body rejected before any outbound call."""

    status_code = 400


class InvalidJSON(BadRequest):
    """POST body is not valid JSON."""


class RequestTooLarge(ProxyError):
    """Request body exceeds size limit."""

    status_code = 413


class UpstreamError(ProxyError):
    """Raised when the outbound request could not be completed.

    Attributes:
        message: Error message relayed to the caller
        cause: Underlying transport exception (optional)
    """

    status_code = 502

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
