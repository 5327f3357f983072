"""
Error Taxonomy and Global Error Handling

This module defines the typed exceptions raised by the sync pipeline and the
application-wide exception handlers that turn them into HTTP responses.

Design Goals
------------
- One exception type per failure class, so user messaging never depends on
  the remote service's wording
- Transient failures (retried) are distinguishable from business rejections
  (never retried)
- Partial successes (import still running) never surface as alarms
- Never leak internal exception details to clients
"""

from __future__ import annotations

import logging
from typing import Any, Dict, NamedTuple, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("sync.errors")


# ---------------------------------------------------------------------
# Exception Taxonomy
# ---------------------------------------------------------------------

class SyncError(RuntimeError):
    """Base class for every failure raised by the sync pipeline."""


class TransientRemoteError(SyncError):
    """Raised when a 5xx or network failure persists after all retries."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BusinessRejectionError(SyncError):
    """Raised when the remote API answers with a non-zero status code."""

    def __init__(self, code: int, msg: str, operation: str = "") -> None:
        prefix = f"{operation} failed: " if operation else ""
        super().__init__(f"{prefix}{msg} (code={code})")
        self.code = code
        self.msg = msg
        self.operation = operation


class AuthenticationError(BusinessRejectionError):
    """Raised when a tenant access token cannot be obtained."""


class FolderConfigError(SyncError):
    """Raised when the target folder is missing or rejected."""


class ImportTimeoutError(SyncError):
    """Raised when an import job is still running after polling gave up."""


class DocumentAccessError(SyncError):
    """Raised when an existing remote document can no longer be read."""


class ConversionError(SyncError):
    """Raised when Markdown conversion yields no usable blocks."""


class SmartUpdateError(SyncError):
    """Raised when clearing or rebuilding an existing document fails."""

    def __init__(self, summary: str, stage: str) -> None:
        super().__init__(summary)
        self.summary = summary
        self.stage = stage


# ---------------------------------------------------------------------
# User Messaging
# ---------------------------------------------------------------------

class UserMessage(NamedTuple):
    """Human-readable outcome of a failed top-level operation."""
    category: str
    message: str
    is_partial_success: bool


def classify_error(exc: BaseException) -> UserMessage:
    """
    Map an exception to a user-facing category and message.

    Classification is by exception type only. Unknown exceptions fall into
    the ``generic`` category and keep their own message.

    Parameters
    ----------
    exc : BaseException
        The failure raised by a top-level pipeline call.

    Returns
    -------
    UserMessage
        Category, message and whether the outcome is a partial success.
    """
    if isinstance(exc, ImportTimeoutError):
        return UserMessage(
            "timeout",
            "Document processing is taking longer than usual. "
            "Check the target folder for the new document shortly.",
            True,
        )
    if isinstance(exc, TransientRemoteError):
        return UserMessage(
            "network",
            "The document service could not be reached. "
            "The document may have been partially created, check manually.",
            False,
        )
    if isinstance(exc, AuthenticationError):
        return UserMessage(
            "auth",
            "Authentication failed. Check the app id, app secret and "
            "application permissions.",
            False,
        )
    if isinstance(exc, FolderConfigError):
        return UserMessage(
            "folder-config",
            "Folder configuration is invalid. Check the folder token and "
            "write access to the folder.",
            False,
        )
    if isinstance(exc, SmartUpdateError):
        return UserMessage("generic", f"Smart update failed: {exc.summary}", False)
    return UserMessage("generic", f"Upload failed: {exc}", False)


_STATUS_BY_CATEGORY: Dict[str, int] = {
    "timeout": 202,
    "network": 502,
    "auth": 401,
    "folder-config": 400,
    "generic": 502,
}


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def sync_error_handler(
    request: Request,
    exc: SyncError,
) -> JSONResponse:
    """
    Convert a typed pipeline failure into a categorized JSON response.

    Parameters
    ----------
    request : Request
        The incoming HTTP request that triggered the exception.

    exc : SyncError
        The pipeline failure.

    Returns
    -------
    JSONResponse
        Payload with ``error`` (category), ``detail`` (user message) and
        ``partial`` (partial-success flag).
    """
    outcome = classify_error(exc)

    if outcome.is_partial_success:
        logger.info("Partial success on %s: %s", request.url.path, exc)
    else:
        logger.error(
            "Sync failure on %s %s (%s): %s",
            request.method,
            request.url.path,
            type(exc).__name__,
            exc,
        )

    payload: Dict[str, Any] = {
        "error": outcome.category,
        "detail": outcome.message,
        "partial": outcome.is_partial_success,
    }

    return JSONResponse(
        status_code=_STATUS_BY_CATEGORY.get(outcome.category, 502),
        content=payload,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Logs the full stack trace internally and returns a generic 500 error
    with no internal details.
    """
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
