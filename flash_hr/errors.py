from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("flash_hr.errors")

_HTTP_ERROR_CODES = {
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ConsolidationError(Exception):
    """Base class for failures while folding leave days into leave periods."""


class InvalidArgument(ConsolidationError, ValueError):
    """A leave day event is missing its employee, its leave type or a usable date."""


class LeavePeriodStoreError(ConsolidationError):
    """The leave period store could not serve a lookup or a write."""


class StoreUnavailable(LeavePeriodStoreError):
    pass


class QueryFailed(LeavePeriodStoreError):
    pass


class LeavePeriodConflict(LeavePeriodStoreError):
    """A write collided with a period created concurrently for the same key."""


def ensure_date_range(from_date: date, to_date: date) -> None:
    if to_date < from_date:
        raise ApiError(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="INVALID_DATE_RANGE",
            message="to_date must be greater than or equal to from_date",
        )


def get_request_id(request: Request) -> str:
    return str(getattr(request.state, "request_id", None) or "unknown")


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {"code": code, "message": message, "request_id": get_request_id(request)}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in item.get("loc", ())), "message": item.get("msg", "")}
        for item in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the `{"error": {...}}` envelope."""

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=_HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail or "Request failed."),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = _validation_details(exc)
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="VALIDATION_ERROR",
            message="; ".join(f"{item['field']}: {item['message']}" for item in details) or "Invalid request.",
            details=details,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_error",
            extra={"request_id": get_request_id(request), "path": request.url.path, "method": request.method},
        )
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="INTERNAL_ERROR",
            message="Unexpected server error.",
        )
