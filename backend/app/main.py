import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from app.api.routes_billing_webhooks import router as billing_webhooks_router
from app.api.routes_health import router as health_router
from app.infra.db import dispose_engine, get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import Metrics, configure_metrics
from app.infra.tracing import configure_tracing, instrument_fastapi
from app.services import AppServices, build_app_services
from app.settings import settings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("app.request")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}
_LOCATION_PREFIXES = {"body", "query", "path"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns the request id, binds it to the log context and writes one access log line."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("request_id", request_id)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            latency_ms = int((time.perf_counter() - started) * 1000)
            update_log_context(status_code=status_code)
            request_logger.info("request", extra={"latency_ms": latency_ms})
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client: Metrics) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            # Route templates keep label cardinality bounded.
            path = getattr(request.scope.get("route"), "path", "unmatched")
            self.metrics.record_http_latency(request.method, path, status_code, time.perf_counter() - started)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, path)
        return response


def _install_state(app: FastAPI, app_settings, services: AppServices) -> None:  # noqa: ANN001
    """Fill ``app.state`` without clobbering anything tests installed beforehand."""
    state = app.state
    state.services = getattr(state, "services", None) or services
    state.app_settings = getattr(state, "app_settings", None) or app_settings
    state.metrics = getattr(state, "metrics", None) or state.services.metrics
    state.db_session_factory = getattr(state, "db_session_factory", None) or get_session_factory()
    state.email_adapter = getattr(state, "email_adapter", None) or state.services.email_adapter
    state.stripe_client = getattr(state, "stripe_client", None) or state.services.stripe_client


def _validation_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part not in _LOCATION_PREFIXES)
        errors.append({"field": field or "body", "message": error.get("msg", "Invalid value")})
    return errors


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        return problem_details(
            request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=_validation_errors(exc),
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(HTTPException)
    async def on_http_error(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else None
        return problem_details(
            request,
            status=exc.status_code,
            title=message or "HTTP Error",
            detail=message or "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else None,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        # Runs outside RequestContextMiddleware, whose log context is already cleared.
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(request_id=request_id, method=request.method, path=request.url.path, status_code=500)
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        clear_log_context()
        return problem_details(
            request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )


def create_app(app_settings, *, tracer_provider=None) -> FastAPI:  # noqa: ANN001
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name, testing=app_settings.testing)
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _install_state(app, app_settings, services)
        yield
        await dispose_engine()

    app = FastAPI(title="CMS Billing Sync", version="1.0.0", lifespan=lifespan)

    # Last added runs first: request context wraps metrics, which wraps the security headers.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestContextMiddleware)
    instrument_fastapi(app, tracer_provider=tracer_provider)

    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(billing_webhooks_router)
    if app_settings.metrics_enabled:
        from app.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
