"""
Error taxonomy and the central handlers that turn exceptions into
`{"success": false, "msg": ...}` responses.
"""
import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DataError, DisconnectionError, IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ValidationError(HTTPException):
    def __init__(self, detail: str = "Invalid input"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class Unauthenticated(HTTPException):
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Forbidden(HTTPException):
    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class Locked(HTTPException):
    def __init__(self, detail: str = "Account is temporarily locked due to too many failed login attempts"):
        super().__init__(status_code=status.HTTP_423_LOCKED, detail=detail)


class Conflict(HTTPException):
    """Duplicate unique value, overlapping range or occupied slot"""

    def __init__(self, detail: str = "Duplicate value"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InvalidTransition(HTTPException):
    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {entity} status transition from {current} to {requested}",
        )


class InsufficientStock(HTTPException):
    def __init__(self, item_name: str, available: int, requested: int):
        self.item_name = item_name
        self.available = available
        self.requested = requested
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Insufficient stock for {item_name}. Available: {available}, Requested: {requested}",
        )


class ServiceUnavailable(HTTPException):
    def __init__(self, detail: str = "Database temporarily unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def error_response(status_code: int, msg: str, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "msg": msg},
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        msg = first.get("msg", "Invalid input")
        detail = f"{field}: {msg}" if field else msg
    else:
        detail = "Invalid input"
    return error_response(status.HTTP_400_BAD_REQUEST, detail)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error on {request.url.path}: {exc.orig}")
    return error_response(status.HTTP_400_BAD_REQUEST, "Duplicate value or broken reference")


async def data_error_handler(request: Request, exc: DataError):
    logger.warning(f"Data error on {request.url.path}: {exc.orig}")
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid value for field")


async def operational_error_handler(request: Request, exc: Exception):
    logger.error(f"Database unavailable on {request.url.path}: {exc}")
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Database temporarily unavailable")


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}: {exc}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Something went wrong, try again later")


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(DataError, data_error_handler)
    app.add_exception_handler(OperationalError, operational_error_handler)
    app.add_exception_handler(DisconnectionError, operational_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
