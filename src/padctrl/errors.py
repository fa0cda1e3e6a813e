"""
Typed errors raised by the device synchronization layer.

Every failure surfaces as a DeviceApiError so callers can decide whether to
log, notify, or feed it into reconnection state.
"""

from typing import Optional


class DeviceApiError(Exception):
    """Base error for anything that went wrong talking to the pad API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.cause = cause
        self.details = details

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"status_code={self.status_code!r})"
        )


class ValidationError(DeviceApiError):
    """Rejected locally before any request was sent."""


class TransientRequestError(DeviceApiError):
    """A request kept failing until its attempt budget ran out."""


class DeviceRejectedError(DeviceApiError):
    """The API answered with a non-2xx business error."""


class MalformedResponseError(DeviceApiError):
    """The API answered 2xx but the body could not be used."""


class SustainedUnreachableError(DeviceApiError):
    """Status polling has failed on several consecutive cycles."""
