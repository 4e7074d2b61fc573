"""Middleware for error handling and request timing."""

import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    """Map a workflow engine error to an HTTP status code."""
    from .exceptions import (
        GraphValidationError, StorageError, ExecutionEngineError, ExecutionNotFoundError,
        InvalidExecutionStateError, ResourceExhaustionError, TransientError, ConfigurationError,
        WorkflowNotFoundError, WorkflowAlreadyExistsError, TriggerError, TriggerNotFoundError
    )

    if isinstance(error, (WorkflowNotFoundError, ExecutionNotFoundError, TriggerNotFoundError)):
        return 404
    elif isinstance(error, GraphValidationError):
        return 400
    elif isinstance(error, TriggerError):
        return 400
    elif isinstance(error, (InvalidExecutionStateError, WorkflowAlreadyExistsError)):
        return 409
    elif isinstance(error, StorageError):
        return 500
    elif isinstance(error, (ResourceExhaustionError, TransientError)):
        return 503
    elif isinstance(error, ConfigurationError):
        return 500
    elif isinstance(error, ExecutionEngineError):
        if "not running" in error.message.lower():
            return 503
        return 500
    else:
        return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Attaches a request id to every request and turns uncaught errors into JSON."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown"
        )

        try:
            logger.debug(f"Request started: {request.method} {request.url.path}")
            response = await call_next(request)
            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            duration = time.time() - start_time
            logger.warning(
                f"Workflow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s",
                extra={"error_details": e.to_dict()}
            )
            return JSONResponse(
                status_code=get_status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Flags slow requests and reports the response time in a header."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
