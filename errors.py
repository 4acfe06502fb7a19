"""
API error type and JSON error rendering.

Every error leaves the API as {"error": message, "code": CODE, "field"?: name}.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}


class ApiError(HTTPException):
    """HTTPException carrying an explicit error code and the offending field"""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None,
                 field: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code or STATUS_CODES.get(status_code, "INTERNAL_ERROR")
        self.field = field


def bad_request(message: str, field: Optional[str] = None) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, message, field=field)


def not_found(message: str) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, message)


def conflict(message: str, field: Optional[str] = None) -> ApiError:
    return ApiError(status.HTTP_409_CONFLICT, message, field=field)


def plan_limit(message: str) -> ApiError:
    return ApiError(status.HTTP_403_FORBIDDEN, message, code="PLAN_LIMIT")


def error_body(message: str, code: str, field: Optional[str] = None) -> dict:
    body = {"error": message, "code": code}
    if field:
        body["field"] = field
    return body


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = getattr(exc, "code", None) or STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, code, getattr(exc, "field", None)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [part for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = str(loc[0]) if loc else None
    message = first.get("msg", "Dados inválidos.")
    # pydantic prefixes custom ValueError messages
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(message, "VALIDATION_ERROR", field),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_body("Erro interno do servidor.", "INTERNAL_ERROR"),
    )


def register_exception_handlers(app):
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
