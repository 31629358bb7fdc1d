"""
Shared error response helpers and application-level exception handlers.
Every error leaving the API is JSON with a stable shape: a machine-readable `error` field plus optional `message` and `details`.


Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging
from http import HTTPStatus
from typing import Any, Mapping, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def error_response(
    status_code: int,
    error: Optional[str] = None,
    message: Optional[str] = None,
    details: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    content: dict[str, Any] = {"error": error or status_phrase(status_code)}
    if message is not None:
        content["message"] = message
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=dict(headers) if headers else None)


def http_exception_response(exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        return error_response(exc.status_code, message=detail, headers=exc.headers)
    return error_response(exc.status_code, details=detail, headers=exc.headers)


def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    return http_exception_response(exc)


def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation Error",
        details=jsonable_encoder(exc.errors()),
    )


def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")
