"""Request id and OpenTelemetry tracing middleware.

Every request gets a correlation id, taken from the `X-Request-Id` header or
generated, which is echoed on the response and published to inner layers
through the `request_id` ContextVar. Requests other than OPTIONS/HEAD and the
health/metrics endpoints are wrapped in an HTTP server span.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from contextvars import ContextVar
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.propagate import extract
from opentelemetry.trace import SpanKind, StatusCode, TracerProvider

from pagemux.rsgi import HTTPProtocolProxy

if TYPE_CHECKING:
    from pagemux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler

REQUEST_ID_HEADER = "x-request-id"
EXEMPT_PATHS: frozenset[str] = frozenset({"/healthz", "/ready", "/metrics"})
UNTRACED_METHODS: frozenset[str] = frozenset({"OPTIONS", "HEAD"})

request_id: ContextVar[str] = ContextVar("request_id")

_sequence = itertools.count()


def next_request_id() -> str:
    """Wall clock nanoseconds plus a process-wide sequence number."""
    return f"{time.time_ns()}-{next(_sequence)}"


def current_request_id() -> str:
    return request_id.get("unknown")


class _TracingHTTPProtocol(HTTPProtocolProxy):
    """Adds the request id header and captures the response status."""

    __slots__ = ("_request_id", "status")

    def __init__(self, proto: HTTPProtocol, request_id: str) -> None:
        super().__init__(proto)
        self._request_id = request_id
        self.status: int | None = None

    def _response_headers(
        self, headers: list[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        return [*headers, (REQUEST_ID_HEADER, self._request_id)]

    def _record_status(self, status: int) -> None:
        self.status = status


def tracing(
    *,
    tracer_provider: TracerProvider | None = None,
    next_request_id: Callable[[], str] = next_request_id,
    exempt_paths: frozenset[str] = EXEMPT_PATHS,
) -> Middleware:
    """Create the request id and tracing middleware.

    Args:
        tracer_provider: Optional TracerProvider. If None, uses the global provider.
        next_request_id: Generates an id for requests that arrive without one.
        exempt_paths: Paths that never get a span.

    Example:
        app = tracing()(access_log()(service))
    """
    tracer = trace.get_tracer("pagemux", tracer_provider=tracer_provider)

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def traced_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            rid = scope.headers.get(REQUEST_ID_HEADER) or next_request_id()
            wrapped_proto = _TracingHTTPProtocol(proto, rid)
            token = request_id.set(rid)
            try:
                method = scope.method
                if method in UNTRACED_METHODS or scope.path in exempt_paths:
                    await handler(scope, wrapped_proto)
                    return

                attributes: dict[str, str | int] = {
                    "http.request.method": method,
                    "url.path": scope.path,
                    "url.scheme": scope.scheme,
                    "network.protocol.version": scope.http_version,
                    "server.address": scope.server,
                    "client.address": scope.client,
                    "http.request.id": rid,
                }
                if scope.query_string:
                    attributes["url.query"] = scope.query_string
                user_agent = scope.headers.get("user-agent")
                if user_agent is not None:
                    attributes["user_agent.original"] = user_agent

                with tracer.start_as_current_span(
                    f"{method} {scope.path}",
                    context=extract(scope.headers),
                    kind=SpanKind.SERVER,
                    attributes=attributes,
                    record_exception=True,
                    set_status_on_exception=True,
                ) as span:
                    try:
                        await handler(scope, wrapped_proto)
                    finally:
                        if wrapped_proto.status is not None:
                            span.set_attribute(
                                "http.response.status_code", wrapped_proto.status
                            )
                            if wrapped_proto.status >= 500:
                                span.set_status(StatusCode.ERROR)
            finally:
                request_id.reset(token)

        return traced_handler

    return middleware
