from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import CreditManagementError, PersistenceFailure


logger = logging.getLogger(__name__)


async def credit_error_handler(request: Request, exc: CreditManagementError) -> JSONResponse:
    if isinstance(exc, PersistenceFailure):
        logger.error(
            "Persistence failure: %s",
            exc.message,
            extra={"path": request.url.path, "details": exc.details},
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Full detail goes to the log only; the caller gets an opaque message
    logger.exception(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "INTERNAL_ERROR",
            "message": "The request could not be completed",
        },
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CreditManagementError, credit_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)
