"""
Error taxonomy shared by the gateway, the HTTP layer and the client.

Each error carries the HTTP status it maps to. The service turns them into
``{"detail": ...}`` responses; the client maps response statuses back onto
the same classes with ``error_for_status``.
"""

from typing import Optional


class CourseChatError(Exception):
    """Base class for all course chat errors."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(CourseChatError):
    """A required field is missing or a patch is not allowed."""

    status_code = 400


class UnauthorizedError(CourseChatError):
    """No valid session, or bad login credentials."""

    status_code = 401


class ForbiddenError(CourseChatError):
    """Mutation attempted by someone other than the message author."""

    status_code = 403


class NotFoundError(CourseChatError):
    """Unknown message id."""

    status_code = 404


class StoreUnavailableError(CourseChatError):
    """
    The backing store could not be reached.

    Internal only: the fallback policy absorbs it before it reaches a caller.
    """

    status_code = 503


class ApiError(CourseChatError):
    """Unexpected response status or transport failure seen by the client."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        if status_code is not None:
            self.status_code = status_code


_ERRORS_BY_STATUS = {
    cls.status_code: cls
    for cls in (ValidationError, UnauthorizedError, ForbiddenError, NotFoundError)
}


def error_for_status(status_code: int, detail: str) -> CourseChatError:
    """Build the error matching an HTTP error status."""
    error_cls = _ERRORS_BY_STATUS.get(status_code)
    if error_cls is None:
        return ApiError(detail, status_code=status_code)
    return error_cls(detail)
