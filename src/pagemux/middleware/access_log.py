"""Access log and request duration metrics middleware."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING
from weakref import WeakKeyDictionary

from prometheus_client import REGISTRY, CollectorRegistry, Gauge, Summary

from pagemux.middleware.tracing import EXEMPT_PATHS, current_request_id
from pagemux.rsgi import HTTPProtocolProxy

if TYPE_CHECKING:
    from pagemux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler

logger = logging.getLogger("pagemux.access")

_LABELS = ("code", "method", "path")

_metrics: WeakKeyDictionary[CollectorRegistry, tuple[Gauge, Summary]] = (
    WeakKeyDictionary()
)


def request_metrics(registry: CollectorRegistry = REGISTRY) -> tuple[Gauge, Summary]:
    """The duration gauge and summary of registry, registered on first use."""
    metrics = _metrics.get(registry)
    if metrics is None:
        metrics = (
            Gauge(
                "http_router_request_duration",
                "Duration of the HTTP request",
                _LABELS,
                registry=registry,
            ),
            Summary(
                "http_router_request",
                "Summary of the HTTP request duration",
                _LABELS,
                registry=registry,
            ),
        )
        _metrics[registry] = metrics
    return metrics


class _LoggingHTTPProtocol(HTTPProtocolProxy):
    """Captures the response status and body size."""

    __slots__ = ("size", "status")

    def __init__(self, proto: HTTPProtocol) -> None:
        super().__init__(proto)
        self.status = 200  # a handler that never sets a status sends 200
        self.size = 0

    def _record_status(self, status: int) -> None:
        self.status = status

    def _record_body(self, size: int) -> None:
        self.size += size


def client_ip(scope: HTTPScope) -> str:
    """Client address, preferring X-Forwarded-For, without a port suffix."""
    forwarded = scope.headers.get("x-forwarded-for")
    if forwarded:
        address = forwarded.split(",", 1)[0].strip()
    else:
        address = scope.client
    if address.startswith("["):  # [v6]:port
        return address[1:].partition("]")[0]
    if address.count(":") == 1:  # v4:port
        return address.partition(":")[0]
    return address


def request_uri(scope: HTTPScope) -> str:
    if scope.query_string:
        return f"{scope.path}?{scope.query_string}"
    return scope.path


def access_log(
    *,
    registry: CollectorRegistry = REGISTRY,
    exempt_paths: frozenset[str] = EXEMPT_PATHS,
) -> Middleware:
    """Create the access log middleware.

    After the inner handler finishes, writes one record to the `pagemux.access`
    logger and observes the request duration on a gauge and a summary, both
    labelled by status code, method and path. Requests to `exempt_paths` are
    neither logged nor measured.

    Args:
        registry: Prometheus registry the metrics are registered on. Apps
            built on the same registry share its metrics.
        exempt_paths: Paths that are not logged or measured.
    """
    duration_gauge, duration_summary = request_metrics(registry)

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def logged_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            start = time.perf_counter()
            wrapped_proto = _LoggingHTTPProtocol(proto)
            try:
                await handler(scope, wrapped_proto)
            finally:
                duration = time.perf_counter() - start
                if scope.path not in exempt_paths:
                    _record(scope, wrapped_proto, duration)

        return logged_handler

    def _record(
        scope: HTTPScope, wrapped_proto: _LoggingHTTPProtocol, duration: float
    ) -> None:
        ip = client_ip(scope)
        rid = current_request_id()
        uri = request_uri(scope)
        user_agent = scope.headers.get("user-agent", "")
        logger.info(
            "%s %s %s %d %s %.6f %d %s",
            ip,
            rid,
            scope.method,
            wrapped_proto.status,
            uri,
            duration,
            wrapped_proto.size,
            user_agent,
            extra={
                "component": "access_log",
                "client_ip": ip,
                "request_id": rid,
                "method": scope.method,
                "status": wrapped_proto.status,
                "uri": uri,
                "duration": duration,
                "size": wrapped_proto.size,
                "user_agent": user_agent,
            },
        )
        labels = (str(wrapped_proto.status), scope.method, scope.path)
        duration_gauge.labels(*labels).set(duration)
        duration_summary.labels(*labels).observe(duration)

    return middleware
