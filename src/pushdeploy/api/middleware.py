"""API middleware for logging, metrics, and error handling."""

import time
import uuid
from typing import Any, Callable, Dict

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from starlette.exceptions import HTTPException as StarletteHTTPException

from pushdeploy.core.exceptions import PushDeployError, RemoteCommandError, TargetBusy

logger = structlog.get_logger()

REQUEST_COUNT = Counter(
    "pushdeploy_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_DURATION = Histogram(
    "pushdeploy_http_request_duration_seconds",
    "HTTP request duration",
    ["method", "endpoint"],
)

REJECTED_DELIVERIES = Counter(
    "pushdeploy_webhook_rejected_total",
    "Webhook deliveries refused before queueing",
    ["status"],
)

# Successful requests to these paths log at debug
QUIET_PATHS = {"/health", "/metrics"}


def error_body(exc: PushDeployError) -> Dict[str, Any]:
    """JSON body for an orchestration error, with fields callers act on."""
    body: Dict[str, Any] = {
        "error": exc.__class__.__name__,
        "message": str(exc),
        "code": exc.code,
    }
    if isinstance(exc, TargetBusy):
        body["target"] = exc.target_id
        body["holder"] = exc.holder
    elif isinstance(exc, RemoteCommandError):
        body["exit_status"] = exc.exit_status
    return body


def _count_rejection(request: Request, status_code: int, reason: Any) -> None:
    if request.url.path != "/webhook":
        return
    REJECTED_DELIVERIES.labels(status=status_code).inc()
    logger.warning(
        "Webhook delivery rejected",
        status_code=status_code,
        reason=reason,
        deliveryId=request.headers.get("X-GitHub-Delivery"),
    )


def setup_error_handling(app: FastAPI) -> None:
    """Setup error handling middleware."""

    @app.exception_handler(PushDeployError)
    async def pushdeploy_error_handler(request: Request, exc: PushDeployError) -> JSONResponse:
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(exc.retry_after)
        _count_rejection(request, exc.status_code, exc.code or str(exc))
        if exc.status_code >= 500:
            logger.error("Request failed", error=exc.__class__.__name__, message=str(exc))
        elif isinstance(exc, TargetBusy):
            logger.warning("Target busy", target=exc.target_id, holder=exc.holder)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": "Invalid request data",
                "code": "invalid_request",
                "details": exc.errors(),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions, counting refused webhook deliveries."""
        _count_rejection(request, exc.status_code, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTPException",
                "message": exc.detail,
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
            },
        )


def setup_logging_middleware(app: FastAPI) -> None:
    """Setup request logging middleware.

    A GitHub delivery id, when present, is used as the request id.
    """

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-GitHub-Delivery") or str(uuid.uuid4())

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        start_time = time.time()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            elif request.url.path in QUIET_PATHS:
                log = logger.debug
            else:
                log = logger.info
            log("Request completed", status_code=response.status_code, duration_seconds=duration)
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            duration = time.time() - start_time
            logger.exception(
                "Request failed",
                duration_seconds=duration,
                exc_info=exc,
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "method", "path", "client")


def setup_metrics_middleware(app: FastAPI) -> None:
    """Setup metrics collection middleware."""

    @app.middleware("http")
    async def collect_metrics(request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        # Route template keeps run ids out of label values
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response
