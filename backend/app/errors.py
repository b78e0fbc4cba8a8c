"""Mapping of engine errors to HTTP responses.

Every error body has the shape ``{"error": message, "code": code}``.
"""

from coordinator.jobs import (
    EscrowCallFailedError,
    EscrowUnavailableError,
    InvalidTransitionError,
    JobBusyError,
    JobNotFoundError,
    JobServiceError,
    JobValidationError,
    StorageError,
)
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .logging_config import get_logger

logger = get_logger("api.errors")

# Most specific first: JobBusyError is an InvalidTransitionError
ERROR_STATUS = [
    (JobValidationError, status.HTTP_400_BAD_REQUEST),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobBusyError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (EscrowUnavailableError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EscrowCallFailedError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]

HTTP_CODES = {
    status.HTTP_400_BAD_REQUEST: "validation_error",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_503_SERVICE_UNAVAILABLE: "unavailable",
}


def error_body(message: str, code: str, **extra) -> dict:
    body = {"error": message, "code": code}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def status_for(exc: JobServiceError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def job_service_error_handler(request: Request, exc: JobServiceError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} | {exc.code} | {exc}")
    tx_hash = getattr(exc, "tx_hash", None)
    return JSONResponse(
        status_code=status_code,
        content=error_body(str(exc), exc.code, txHash=tx_hash),
    )


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} | storage_error | {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Storage error", "storage_error"),
    )


async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        details.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("; ".join(details) or "Invalid request", "validation_error"),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), HTTP_CODES.get(exc.status_code, "http_error")),
        headers=getattr(exc, "headers", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(JobServiceError, job_service_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
