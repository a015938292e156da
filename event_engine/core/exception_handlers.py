import logging
import uuid
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from event_engine.core.exceptions import (
    EventSystemError,
    EventSystemDisabledError,
    PayloadTooLargeError,
    QueryTimeoutError,
)

log = logging.getLogger("event_api")


# Generate a clean request id for every response
def _rid():
    """Generates a unique request ID for tracing."""
    return uuid.uuid4().hex


def _error_body(code: str, message, **extra):
    error = {"code": code, "message": message}
    error.update(extra)
    return {"success": False, "error": error, "request_id": _rid()}


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return JSONResponse(status_code=exc.status_code, content=_error_body("http_error", exc.detail))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    body = _error_body("validation_error", "Invalid input data", details=exc.errors())
    return JSONResponse(status_code=422, content=body)


def event_system_exception_handler(request: Request, exc: EventSystemError):
    """Maps event engine errors that reach the API to client-facing status codes."""
    if isinstance(exc, PayloadTooLargeError):
        status_code = 413
    elif isinstance(exc, QueryTimeoutError):
        status_code = 504
    elif isinstance(exc, EventSystemDisabledError):
        status_code = 503
    elif isinstance(exc, ValueError):
        status_code = 400
    else:
        status_code = 500
    log.warning(f"Event system error on path {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=_error_body("event_error", str(exc)))


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.error(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body("server_error", "Internal Server Error"))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EventSystemError, event_system_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
