"""Composes the instrumented RSGI app and runs it on granian."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import reduce
from pathlib import Path
from typing import TYPE_CHECKING

from granian.server.embed import Server
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from pagemux.middleware.access_log import access_log
from pagemux.middleware.basic_auth import basic_auth
from pagemux.middleware.tracing import next_request_id, tracing

if TYPE_CHECKING:
    from opentelemetry.trace import TracerProvider
    from prometheus_client import CollectorRegistry

    from pagemux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler
    from pagemux.service import Service

logger = logging.getLogger(__name__)

HEALTH_PATHS: frozenset[str] = frozenset({"/healthz", "/ready"})
METRICS_PATH = "/metrics"


async def health(scope: HTTPScope, proto: HTTPProtocol) -> None:
    proto.response_str(200, [("content-type", "text/plain")], "ok")


def metrics_handler(registry: CollectorRegistry = REGISTRY) -> RSGIHTTPHandler:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_bytes(
            200, [("content-type", CONTENT_TYPE_LATEST)], generate_latest(registry)
        )

    return handler


def chain(handler: RSGIHTTPHandler, *middleware: Middleware) -> RSGIHTTPHandler:
    """Wrap handler so the first middleware is the outermost."""
    return reduce(lambda h, m: m(h), reversed(middleware), handler)


def create_app(
    service: Service,
    *,
    registry: CollectorRegistry = REGISTRY,
    password_file: Path | str | None = None,
    tracer_provider: TracerProvider | None = None,
    next_request_id: Callable[[], str] = next_request_id,
) -> RSGIHTTPHandler:
    """Root RSGI handler: tracing, then access log, then routing.

    `/healthz` and `/ready` answer `ok`, `/metrics` serves the Prometheus
    registry behind basic authentication, and everything else goes to the
    service.
    """
    metrics = basic_auth(password_file)(metrics_handler(registry))

    async def root(scope: HTTPScope, proto: HTTPProtocol) -> None:
        path = scope.path
        if path in HEALTH_PATHS:
            await health(scope, proto)
        elif path == METRICS_PATH:
            await metrics(scope, proto)
        else:
            await service(scope, proto)

    return chain(
        root,
        tracing(tracer_provider=tracer_provider, next_request_id=next_request_id),
        access_log(registry=registry),
    )


async def serve(app: RSGIHTTPHandler, *, address: str, port: int) -> None:
    """Serve app until cancelled."""
    server = Server(app, address=address, port=port)
    logger.info("listening on %s:%d", address, port, extra={"component": "service"})
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()
        raise
