"""
DRF exception handler translating domain errors into API responses.

Configured via REST_FRAMEWORK["EXCEPTION_HANDLER"]. Application errors
become ``{"error", "error_code", "details"}`` bodies with a status code
derived from the exception class; everything else falls through to
DRF's default handler.
"""

from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; the first matching class wins, so subclasses that
# need a different status must set ``http_status`` themselves.
STATUS_BY_ERROR: list[tuple[type[BaseApplicationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: BaseApplicationError) -> int:
    """Return the HTTP status for an application error."""
    explicit = getattr(exc, "http_status", None)
    if explicit:
        return explicit
    for error_class, code in STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            return code
    return status.HTTP_400_BAD_REQUEST


def api_exception_handler(exc, context):
    if isinstance(exc, BaseApplicationError):
        http_status = status_for(exc)
        log = logger.error if http_status >= 500 else logger.info
        log(
            f"Request failed: {exc.error_code}",
            extra={
                "error_code": exc.error_code,
                "status_code": http_status,
                "view": context.get("view").__class__.__name__
                if context.get("view")
                else None,
            },
        )
        return Response(exc.to_dict(), status=http_status)

    return exception_handler(exc, context)
