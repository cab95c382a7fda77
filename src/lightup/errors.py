from __future__ import annotations

from typing import Literal

NETWORK_MESSAGE = "Connection issue. Please check your internet and try again."
UNKNOWN_MESSAGE = "An unexpected error occurred. Please try again."


class GatewayError(Exception):
    """Base class for failures the dispatcher turns into an ``error`` event."""

    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigurationInvalid(GatewayError):
    """Raised when the credential or endpoint required by a backend is missing."""


class RateLimited(GatewayError):
    retryable = True

    def __init__(self, window: Literal["minute", "hour"], retry_after: int) -> None:
        super().__init__(
            f"Rate limit exceeded: too many requests in the last {window}. "
            f"Please try again in {retry_after} seconds."
        )
        self.window = window
        self.retry_after = retry_after


class ServerError(GatewayError):
    """Raised for a non-2xx provider response, or an error object inside a stream."""

    def __init__(self, status: int, detail: str | None = None) -> None:
        super().__init__(f"provider responded with {status}" + (f": {detail}" if detail else ""))
        self.status = status
        self.detail = detail
        self.retryable = status == 429 or status >= 500


class NetworkError(GatewayError):
    retryable = True


class Aborted(GatewayError):
    """Cancellation of an in-flight request. Never surfaced to the caller."""


class ParseError(GatewayError):
    """A streaming line that could not be decoded. Logged and skipped."""


def user_message(exc: BaseException) -> str:
    if isinstance(exc, NetworkError):
        return NETWORK_MESSAGE
    if isinstance(exc, ServerError):
        message = f"Server error ({exc.status}). Please try again in a moment."
        if exc.detail:
            message = f"{message} ({exc.detail})"
        return message
    if isinstance(exc, (ConfigurationInvalid, RateLimited)):
        return exc.message
    return UNKNOWN_MESSAGE


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, GatewayError):
        return exc.retryable
    return False
