"""Exception handler middleware for structured error responses."""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import DatabaseError, DocForgeException

logger = logging.getLogger(__name__)


async def docforge_exception_handler(request: Request, exc: DocForgeException) -> JSONResponse:
    """
    Convert a DocForgeException into its JSON error body.

    Client errors (4xx) are logged at warning level, server errors at error.

    Args:
        request: FastAPI request object
        exc: DocForgeException instance

    Returns:
        JSONResponse with error details
    """
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"DocForgeException: {exc.error_code.value}",
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Report an unhandled SQLAlchemy error as a structured DATABASE_ERROR."""
    logger.error(
        f"Database error on {request.method} {request.url.path}: {exc}",
        extra={"path": request.url.path, "method": request.method},
    )
    error = DatabaseError("Cache database operation failed", exc)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())
