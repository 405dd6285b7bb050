"""Error taxonomy for the client core.

Transport-level failures are raised to the caller; the notification side
effect (if any) is the caller's decision.  Persistence failures never appear
here -- the storage facade degrades to memory and only logs.
"""

from __future__ import annotations

import json
from typing import Any

DEFAULT_ERROR_MESSAGE = "An unexpected error occurred"


class ApiError(RuntimeError):
    """Raised for a non-2xx HTTP response.

    ``data`` holds the parsed error payload, or ``{"message": reason}`` when
    the body was not JSON.
    """

    def __init__(self, message: str, *, status: int, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data if data is not None else {}


class TransportError(RuntimeError):
    """Raised when the request never produced an HTTP response."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestAbortedError(RuntimeError):
    """Base for requests that were stopped before completing."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.message = message
        self.url = url


class RequestTimeoutError(RequestAbortedError):
    """The request exceeded its deadline."""


class RequestCancelledError(RequestAbortedError):
    """The caller's cancellation signal fired before the response arrived."""


class WorkspaceNotFoundError(LookupError):
    """Raised when neither workspace endpoint knows the requested id."""


def get_error_message(error: object) -> str:
    """Extract a human-readable message from any error-ish value."""
    if error is None:
        return DEFAULT_ERROR_MESSAGE
    if isinstance(error, str):
        return error

    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__

    if isinstance(error, dict):
        if isinstance(error.get("message"), str):
            return error["message"]
        code = error.get("code")
        if isinstance(code, str | int):
            return f"Error code: {code}"
        try:
            return json.dumps(error)
        except (TypeError, ValueError):
            return DEFAULT_ERROR_MESSAGE

    return DEFAULT_ERROR_MESSAGE
