import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlparse, urlunparse

from opentelemetry import trace

SERVICE_NAME = "rbxsync"

_OTEL_READY = False
_OTEL_ENABLED = False

# Only these response headers are copied onto spans; request headers never are.
_RESPONSE_HEADERS = {
    "Content-Type": "http.response.content_type",
    "Retry-After": "http.response.retry_after",
    "x-roblox-edge": "http.response.edge",
}


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    tracer = trace.get_tracer(SERVICE_NAME)
    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def init_telemetry(service_version: str = "") -> bool:
    global _OTEL_READY, _OTEL_ENABLED

    if _OTEL_READY:
        return _OTEL_ENABLED
    _OTEL_READY = True

    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        logging.debug("UPTRACE_DSN is not set, tracing is disabled")
        return False

    try:
        import uptrace

        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=os.environ.get("OTEL_SERVICE_NAME", SERVICE_NAME).strip(),
            service_version=os.environ.get("OTEL_SERVICE_VERSION", service_version).strip(),
            deployment_environment=os.environ.get("OTEL_DEPLOYMENT_ENVIRONMENT", "").strip(),
        )
    except (ImportError, RuntimeError, ValueError, TypeError) as exc:
        logging.warning("Failed to initialize tracing (install rbxsync[telemetry]): %s", exc)
        return False

    _instrument_http_clients()
    _OTEL_ENABLED = True
    logging.info("Tracing is enabled and exporting to Uptrace")
    return True


def shutdown_telemetry() -> None:
    if not _OTEL_ENABLED:
        return
    try:
        import uptrace

        uptrace.shutdown()
    except (ImportError, RuntimeError, ValueError) as exc:
        logging.warning("Failed to shut down tracing cleanly: %s", exc)


def _instrument_http_clients() -> None:
    try:
        from opentelemetry.instrumentation.requests import RequestsInstrumentor

        RequestsInstrumentor().instrument(
            request_hook=_requests_request_hook,
            response_hook=_requests_response_hook,
        )
    except (ImportError, RuntimeError, ValueError, TypeError) as exc:
        logging.warning("requests instrumentation is unavailable: %s", exc)

    try:
        from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor

        AioHttpClientInstrumentor().instrument(
            request_hook=_aiohttp_request_hook,
            response_hook=_aiohttp_response_hook,
        )
    except (ImportError, RuntimeError, ValueError, TypeError) as exc:
        logging.warning("aiohttp instrumentation is unavailable: %s", exc)


def _requests_request_hook(span: Any, request_obj: Any) -> None:
    _name_client_span(span, getattr(request_obj, "method", ""), getattr(request_obj, "url", ""))


def _requests_response_hook(span: Any, _request_obj: Any, response_obj: Any) -> None:
    _record_response(
        span,
        getattr(response_obj, "status_code", None),
        getattr(response_obj, "headers", None),
    )


def _aiohttp_request_hook(span: Any, params: Any) -> None:
    _name_client_span(span, getattr(params, "method", ""), getattr(params, "url", ""))


def _aiohttp_response_hook(span: Any, params: Any) -> None:
    response = getattr(params, "response", None)
    _record_response(span, getattr(response, "status", None), getattr(response, "headers", None))


def _name_client_span(span: Any, method: str, url: Any) -> None:
    if span is None or not span.is_recording():
        return
    parsed = urlparse(str(url or ""))
    route = normalize_route(parsed.path)
    span.update_name(f"{(method or 'HTTP').upper()} {parsed.netloc}{route}")
    span.set_attribute("http.route", route)
    # query strings can carry cursors and ids; keep the URL without them
    span.set_attribute("url.full", urlunparse(parsed._replace(query="")))


def _record_response(span: Any, status_code: Any, headers: Any) -> None:
    if span is None or not span.is_recording():
        return
    try:
        span.set_attribute("http.response.status_code", int(status_code))
    except (TypeError, ValueError):
        pass
    if headers is None:
        return
    for header, attribute in _RESPONSE_HEADERS.items():
        value = headers.get(header)
        if value:
            span.set_attribute(attribute, str(value)[:256])


def normalize_route(path: str) -> str:
    """Collapse numeric path segments so spans group by endpoint, not by id."""
    parts = ["{id}" if part.isdigit() else part for part in (path or "").split("/") if part]
    return "/" + "/".join(parts)
