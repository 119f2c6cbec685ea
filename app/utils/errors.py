from typing import Dict, Tuple, Type
from fastapi import FastAPI, Request, status
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
import traceback
from .logging import get_logger
from .responses import ResponseBuilder

logger = get_logger()


class ServiceError(Exception):
    """Base for errors that map onto an API error response."""

    default_error_code = "SERVICE_ERROR"

    def __init__(self, message: str, error_code: str = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code


class DatabaseError(ServiceError):
    default_error_code = "DB_ERROR"


class DuplicateDispatchError(DatabaseError):
    """A dispatch log entry with the same dedupe key already exists."""

    def __init__(self, dedupe_key: str):
        super().__init__(
            f"Dispatch log entry already exists for dedupe key: {dedupe_key}",
            error_code="DUPLICATE_DISPATCH",
        )
        self.dedupe_key = dedupe_key


class BusinessLogicError(ServiceError):
    default_error_code = "BLOC_ERROR"


class NotificationValidationError(BusinessLogicError):
    """Caller supplied a notification profile that can never be scheduled."""

    default_error_code = "NOTIFICATION_VALIDATION_ERROR"


class InvalidTimezoneError(NotificationValidationError):
    def __init__(self, timezone_name: object):
        super().__init__(f"Invalid timezone: {timezone_name!r}", "INVALID_TIMEZONE")
        self.timezone_name = timezone_name


class InvalidHourError(NotificationValidationError):
    def __init__(self, field_name: str, value: object):
        super().__init__(
            f"{field_name} must be an integer between 0 and 23", "INVALID_HOUR"
        )
        self.field_name = field_name
        self.value = value


class InvalidWeekdayError(NotificationValidationError):
    def __init__(self, field_name: str, value: object):
        super().__init__(
            f"{field_name} must be an integer between 0 (Sunday) and 6 (Saturday)",
            "INVALID_WEEKDAY",
        )
        self.field_name = field_name
        self.value = value


class AuthenticationError(ServiceError):
    default_error_code = "AUTH_ERROR"

    def __init__(self, message: str = "Authentication failed", error_code: str = None):
        super().__init__(message, error_code)


class AuthorizationError(ServiceError):
    default_error_code = "AUTHZ_ERROR"

    def __init__(self, message: str = "Access denied", error_code: str = None):
        super().__init__(message, error_code)


class NotFoundError(ServiceError):
    default_error_code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found", error_code: str = None):
        super().__init__(message, error_code)


# exception -> (HTTP status, meta.error_type, log level)
# Starlette picks the handler of the most specific class in the exception's MRO.
SERVICE_ERROR_RESPONSES: Dict[Type[ServiceError], Tuple[int, str, str]] = {
    NotificationValidationError: (
        status.HTTP_400_BAD_REQUEST,
        "NOTIFICATION_VALIDATION_ERROR",
        "WARNING",
    ),
    BusinessLogicError: (status.HTTP_400_BAD_REQUEST, "BUSINESS_ERROR", "ERROR"),
    AuthenticationError: (
        status.HTTP_401_UNAUTHORIZED,
        "AUTHENTICATION_ERROR",
        "WARNING",
    ),
    AuthorizationError: (status.HTTP_403_FORBIDDEN, "AUTHORIZATION_ERROR", "WARNING"),
    NotFoundError: (status.HTTP_404_NOT_FOUND, "NOT_FOUND_ERROR", "INFO"),
    DatabaseError: (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "DATABASE_ERROR",
        "ERROR",
    ),
}


def _service_error_handler(status_code: int, error_type: str, level: str):
    async def handler(request: Request, exc: ServiceError):
        logger.log(level, f"{type(exc).__name__}: {exc.message}")
        return ResponseBuilder.error(
            request=request,
            message=exc.message,
            error_code=exc.error_code,
            status_code=status_code,
            meta={"error_type": error_type},
        )

    return handler


def setup_error_handlers(app: FastAPI):
    """Setup custom error handlers."""

    for exc_class, (status_code, error_type, level) in SERVICE_ERROR_RESPONSES.items():
        app.add_exception_handler(
            exc_class, _service_error_handler(status_code, error_type, level)
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
        return ResponseBuilder.error(
            request=request,
            message=str(exc.detail),
            error_code="HTTP_ERROR",
            status_code=exc.status_code,
            meta={"http_status": exc.status_code},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.warning(f"Request Validation Error: {exc.errors()}")

        formatted_errors = [
            {
                "field": " -> ".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        return ResponseBuilder.error(
            request=request,
            message="Request validation failed",
            errors=formatted_errors,
            error_code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"SQLAlchemy Error: {str(exc)}")

        # Don't expose internal database errors to users
        return ResponseBuilder.error(
            request=request,
            message="A database error occurred",
            error_code="DATABASE_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "SQLALCHEMY_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other unhandled exceptions"""
        logger.error(f"Unhandled Exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")

        return ResponseBuilder.error(
            request=request,
            message="An internal server error occurred",
            error_code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            meta={"error_type": "INTERNAL_ERROR"},
        )
