"""
Difybatch-specific runtime exceptions.
"""

from __future__ import annotations


class DifyError(Exception):
    """
    Base class for every error raised by difybatch.
    """


class SettingNotFoundError(DifyError):
    """
    Raised when an operation needs the remote service but no setting is active.
    """

    def __init__(self, message: str = "No active Dify setting found") -> None:
        super().__init__(message)


class DispatchError(DifyError):
    """
    Raised when a work item could not be handed to the dispatch queue.

    Notes
    -----
    The messages of the affected batch are already persisted; only the
    scheduling step failed.
    """


class DifyRuntimeError(DifyError):
    """
    Raised on inconsistent store state, e.g. a batch without members.
    """


class RemoteServiceError(DifyError):
    """
    Raised when the remote service answers with a non-success status.

    Parameters
    ----------
    message : str
        Human readable error summary.
    status_code : int | None, optional
        HTTP status code returned by the remote service.
    body : str | None, optional
        Raw response body, when available.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def exception_code(*, error: BaseException) -> int:
    """
    Extract a numeric code from an exception for failure records.

    Parameters
    ----------
    error : BaseException
        Exception raised by the remote step.

    Returns
    -------
    int
        HTTP status code when the error carries one, else ``0``.
    """
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(error, "response", None)
    response_status = getattr(response, "status_code", None)
    if isinstance(response_status, int):
        return response_status
    return 0
