"""HTTP status mapping for pipeline errors."""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from services.error_sanitizer import sanitize_public_error_message
from services.errors import (
    ConfigurationError,
    NetworkError,
    NotFoundError,
    SafetyRejectionError,
    StorageError,
    TryOnError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[TryOnError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    SafetyRejectionError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NetworkError: status.HTTP_502_BAD_GATEWAY,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_STATUS_BY_NAME = {
    cls.__name__: code for cls, code in ERROR_STATUS_CODES.items()
}


def status_for_error(exc: TryOnError) -> int:
    """Most specific mapped status along the exception's MRO."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def status_for_error_type(error_type: str | None) -> int:
    """Status for an error class name carried in a PipelineResponse."""
    if error_type in _STATUS_BY_NAME:
        return _STATUS_BY_NAME[error_type]
    if error_type in ("ImageLoadError", "InvalidRegionError"):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def tryon_error_handler(request: Request, exc: TryOnError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    content = {
        "detail": sanitize_public_error_message(exc.message, fallback=exc.public_message),
        "errorType": type(exc).__name__,
    }
    if isinstance(exc, SafetyRejectionError):
        content["concerns"] = exc.concerns
    return JSONResponse(status_code=code, content=content)
