"""Domain exceptions and the handlers that render them.

Every error leaves the API in the same envelope:

    {"error": {"code": "PLOT_NOT_FOUND", "message": "...", "details": {...}}}

Services raise the FarmGridException subclasses below; routers never
build error responses by hand.
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class FarmGridException(Exception):
    """Base exception for FarmGrid application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class ResourceNotFoundError(FarmGridException):
    def __init__(self, message: str, error_code: str = "RESOURCE_NOT_FOUND"):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code=error_code,
        )


class FarmNotFoundError(ResourceNotFoundError):
    """Farm id unknown, owned by someone else, or soft-deleted."""

    def __init__(self, farm_id: str):
        self.farm_id = farm_id
        super().__init__(f"Farm not found: {farm_id}", error_code="FARM_NOT_FOUND")


class PlotNotFoundError(ResourceNotFoundError):
    def __init__(self, farm_id: str, plot_number: int):
        self.plot_number = plot_number
        super().__init__(
            f"Plot {plot_number} not found in farm {farm_id}",
            error_code="PLOT_NOT_FOUND",
        )


class NoPlotsFoundError(ResourceNotFoundError):
    """A bulk operation matched none of the requested plot numbers.

    Distinct from PlotNotFoundError: the farm exists, and a partial match
    is not an error at all.
    """

    def __init__(self, farm_id: str, plot_numbers: list[int]):
        self.plot_numbers = plot_numbers
        super().__init__(
            f"No valid plots found in farm {farm_id} for {plot_numbers}",
            error_code="NO_PLOTS_FOUND",
        )


class InputValidationError(FarmGridException):
    """Malformed service input, rejected before the database is touched."""

    def __init__(self, message: str, error_code: str = "INVALID_INPUT"):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code=error_code,
        )


class InvariantDriftError(FarmGridException):
    """Plot sizes add up to more than the farm's area allows."""

    def __init__(self, total_plot_area: float, total_size: float, limit: float):
        super().__init__(
            message=(
                f"Total plot size {total_plot_area:.4f} exceeds farm size "
                f"{total_size:.4f} (limit {limit:.4f})"
            ),
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="PLOT_AREA_EXCEEDS_FARM",
            details={
                "total_plot_area": total_plot_area,
                "total_size": total_size,
                "limit": limit,
            },
        )


class ConflictError(FarmGridException):
    """The farm changed since the caller loaded it; reload and retry."""

    def __init__(self, message: str, current_revision: int | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="REVISION_CONFLICT",
            details={"current_revision": current_revision}
            if current_revision is not None else None,
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def farmgrid_exception_handler(
    request: Request,
    exc: FarmGridException,
) -> JSONResponse:
    logger.warning(
        f"FarmGrid exception: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
        )

    response = create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def stale_data_exception_handler(
    request: Request,
    exc: StaleDataError,
) -> JSONResponse:
    """A concurrent save bumped the farm revision between our load and flush."""
    logger.warning(
        f"Lost-update race on {request.url.path}: {exc}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=status.HTTP_409_CONFLICT,
        message="Farm was modified by another request. Reload and retry.",
        error_code="REVISION_CONFLICT",
    )


async def database_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    logger.error(
        f"Database integrity error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)

    if "unique" in error_msg.lower():
        message = "A record with this value already exists"
        error_code = "DUPLICATE_RECORD"
    elif "foreign key" in error_msg.lower():
        message = "Referenced record does not exist"
        error_code = "FOREIGN_KEY_VIOLATION"
    else:
        message = "Database constraint violation"
        error_code = "INTEGRITY_ERROR"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message=message,
        error_code=error_code,
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    logger.error(
        f"Database operational error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.error(
        f"Unhandled exception on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
        exc_info=True,
    )

    # Persistence failures stay opaque to the caller
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(FarmGridException, farmgrid_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(StaleDataError, stale_data_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
