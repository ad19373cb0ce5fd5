import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Add request_id from context if available and not already present
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    # Create JSON handler for stdout
    json_handler = logging.StreamHandler(sys.stdout)

    # Use custom JSON formatter
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Configure Uvicorn loggers to use JSON format
    uvicorn_loggers = [
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ]

    for logger_name in uvicorn_loggers:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Required log keys:
    - ts: server time (ISO-8601)
    - level: log level
    - request_id: unique per request
    - method: HTTP method
    - path: request path
    - status: response status code
    - latency_ms: request processing time in milliseconds

    For /webhook requests, also includes:
    - result: processing result (processed, ignored, invalid_json, error)
    - messages, statuses, unmatched_statuses, contacts, skipped: item counts
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Generate unique request ID
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # Set request_id in context for all loggers to use
        token = request_id_ctx.set(request_id)

        # Record start time
        start_time = time.time()

        try:
            # Process request
            response = await call_next(request)

            # Add request ID to response headers
            response.headers["X-Request-ID"] = request_id

            # Calculate latency
            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Record metrics (exclude /metrics endpoint to avoid self-instrumentation noise)
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            # Build log data
            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            # Add webhook-specific fields if present in request state
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            # Log the request
            logger = logging.getLogger("app.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            # Reset context
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, result: str, tally: Optional[dict[str, Any]] = None):
    """
    Attach webhook-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        result: Processing result (processed, ignored, invalid_json, error)
        tally: Per-kind item counts from the ingestor
    """
    webhook_data: dict[str, Any] = {"result": result}

    # The ingestor's ignored flag is already expressed by result
    if tally:
        webhook_data.update({k: v for k, v in tally.items() if k != "ignored"})

    request.state.webhook_log_data = webhook_data
