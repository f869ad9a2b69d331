"""Error types raised by the process controller and its collaborators."""

from __future__ import annotations

from http import HTTPStatus


class ControllerError(RuntimeError):
    """Base class for controller failures.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    status_code : int | None, optional
        HTTP status code surfaced to API clients. Subclasses provide a default.
    """

    default_status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code if status_code is not None else self.default_status_code


class InvalidArgumentError(ControllerError, ValueError):
    """Raised when start parameters are malformed or out of range."""

    default_status_code = HTTPStatus.BAD_REQUEST


class ModelStateError(ControllerError):
    """Raised when an operation conflicts with the current lifecycle state."""

    default_status_code = HTTPStatus.CONFLICT


class WaitTimeoutError(ControllerError, TimeoutError):
    """Raised when a bounded wait does not observe the target state in time."""

    default_status_code = HTTPStatus.GATEWAY_TIMEOUT


class ProcessFaultError(ControllerError):
    """Raised when the child process cannot be launched."""


class BinaryNotFoundError(ProcessFaultError):
    """Raised when the configured child executable does not exist."""


class SyncFaultError(ControllerError):
    """Raised when the child's status endpoint cannot be interpreted."""

    default_status_code = HTTPStatus.BAD_GATEWAY


class ChildUnreachableError(SyncFaultError):
    """The status endpoint did not answer or answered with a non-success code."""


class UnexpectedStatusPayloadError(SyncFaultError):
    """The status endpoint answered but the payload has an unexpected shape."""
