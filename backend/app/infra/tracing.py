import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

VERSION_ENV_VARS = ("GIT_SHA", "GIT_COMMIT", "SOURCE_VERSION", "SERVICE_VERSION")

_state = {"configured": False, "shut_down": False}


def _service_resource(service_name: str | None) -> Resource:
    attributes = {
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or service_name or "billing-api",
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
    }
    version = next((os.environ[key] for key in VERSION_ENV_VARS if os.getenv(key)), None)
    if version:
        attributes[SERVICE_VERSION] = version
    return Resource.create(attributes)


def configure_tracing(*, service_name: str | None = None, testing: bool = False) -> None:
    """Install the global tracer provider once per process.

    Spans are exported over OTLP only when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set
    and the process is not under test; otherwise they are created and dropped.
    """
    if _state["configured"]:
        return
    provider = TracerProvider(resource=_service_resource(service_name))
    trace.set_tracer_provider(provider)

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and not testing:
        exporter = OTLPSpanExporter(endpoint=endpoint, insecure=endpoint.startswith("http://"))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not testing:
        logger.debug("tracing_exporter_skipped_no_endpoint")

    _state["configured"] = True
    atexit.register(shutdown_tracing)


def _route_template_hook(span, scope) -> None:  # noqa: ANN001
    # Only the route template is recorded; webhook query strings and headers stay out of spans.
    if span is None or not span.is_recording():
        return
    route = scope.get("route")
    span.set_attribute("http.target", getattr(route, "path", None) or scope.get("path", "/"))


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_route_template_hook,
    )


def shutdown_tracing() -> None:
    if _state["shut_down"]:
        return
    _state["shut_down"] = True
    provider = trace.get_tracer_provider()
    try:
        for method_name in ("force_flush", "shutdown"):
            method = getattr(provider, method_name, None)
            if callable(method):
                method()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
