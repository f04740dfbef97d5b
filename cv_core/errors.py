# cv_core/errors.py
"""
Error taxonomy for the sync engine.

Every remote failure is translated into one of four kinds before it reaches a
caller:

- TransientNetworkError  -> retryable, shown inline without blocking the UI
- PermissionDeniedError  -> not retryable, the operation is abandoned
- NotFoundError          -> reads treat it as an empty result
- PartialBatchError      -> one step of a two-step operation failed
"""
from __future__ import annotations

from typing import Optional

import requests
from google.api_core import exceptions as gexc
from firebase_admin import exceptions as fexc


class SyncError(Exception):
    code = "SYNC_ERROR"
    retryable = False

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause

    def as_payload(self) -> dict:
        return {
            "type": "error",
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class TransientNetworkError(SyncError):
    code = "TRANSIENT_NETWORK"
    retryable = True


class PermissionDeniedError(SyncError):
    code = "PERMISSION_DENIED"


class NotFoundError(SyncError):
    code = "NOT_FOUND"


class PartialBatchError(SyncError):
    """A multi-step remote operation stopped after `completed` steps."""

    code = "PARTIAL_BATCH"

    def __init__(self, message: str = "", *, step: str = "", completed: int = 0,
                 cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.step = step
        self.completed = completed


class SummaryLagError(PartialBatchError):
    """The message was written but the chat's lastMessage summary was not."""

    code = "SUMMARY_LAG"

    def __init__(self, message_id: str, *, cause: Optional[BaseException] = None):
        super().__init__(
            f"message {message_id} written, chat summary update failed",
            step="summary",
            completed=1,
            cause=cause,
        )
        self.message_id = message_id


_TRANSIENT = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.TooManyRequests,
    gexc.Aborted,
    gexc.InternalServerError,
    fexc.UnavailableError,
    fexc.DeadlineExceededError,
    fexc.ResourceExhaustedError,
    fexc.AbortedError,
    fexc.InternalError,
    ConnectionError,
    TimeoutError,
    requests.ConnectionError,
    requests.Timeout,
)

_PERMISSION = (
    gexc.PermissionDenied,
    gexc.Unauthenticated,
    fexc.PermissionDeniedError,
    fexc.UnauthenticatedError,
)

_NOT_FOUND = (
    gexc.NotFound,
    fexc.NotFoundError,
)


def _classify_http(exc: requests.HTTPError) -> SyncError:
    status = exc.response.status_code if exc.response is not None else 0
    if status == 404:
        return NotFoundError(str(exc), cause=exc)
    if status in (401, 403):
        return PermissionDeniedError(str(exc), cause=exc)
    if status == 429 or status >= 500:
        return TransientNetworkError(str(exc), cause=exc)
    return SyncError(str(exc), cause=exc)


def classify(exc: BaseException) -> SyncError:
    """Map an SDK/transport exception onto the sync error taxonomy."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, requests.HTTPError):
        return _classify_http(exc)
    if isinstance(exc, _NOT_FOUND):
        return NotFoundError(str(exc), cause=exc)
    if isinstance(exc, _PERMISSION):
        return PermissionDeniedError(str(exc), cause=exc)
    if isinstance(exc, _TRANSIENT):
        return TransientNetworkError(str(exc), cause=exc)
    return SyncError(str(exc), cause=exc)
