"""The request dispatcher.

A request path resolves to exactly one outcome, checked in this order:

    1. a configured redirect
    2. a controller (success, controller redirect, or processing error)
    3. a static file
    4. the 404 error page

`Service` is built once by `create_service` and never mutated afterwards, so
one instance can serve any number of concurrent requests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from granian.rsgi import ProtocolClosed
from opentelemetry import trace

from pagemux.apps.static_files import StaticFiles
from pagemux.assets import resolve_asset_roots
from pagemux.error_pages import ErrorPageResolver
from pagemux.errors import ErrorPageError
from pagemux.middleware.tracing import current_request_id
from pagemux.routes import build_error_pages, build_redirects, build_routes
from pagemux.templating import Renderer
from pagemux.types import REDIRECT_CODES, ProcessingError, Reply, Request

if TYPE_CHECKING:
    from pagemux.config import Config
    from pagemux.routes import Redirect
    from pagemux.rsgi import HTTPProtocol, HTTPScope
    from pagemux.types import Controller, Customizer

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "text/html"

_COMPONENT = {"component": "service"}


def normalize_context(context: str) -> str:
    """Context path with a leading and trailing slash."""
    context = "/" + context.strip("/")
    return context if context == "/" else context + "/"


@dataclass(frozen=True, slots=True)
class Service:
    routes: Mapping[str, Controller]
    redirects: Mapping[str, Redirect]
    error_pages: ErrorPageResolver
    static: StaticFiles
    context: str = "/"

    def lookup_key(self, path: str) -> str | None:
        """Route key for path, or None when path is outside the context."""
        if self.context != "/":
            if path == self.context.rstrip("/"):
                return ""
            if not path.startswith(self.context):
                return None
            path = path[len(self.context) :]
        return path.lstrip("/")

    async def __call__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        span = trace.get_current_span()
        key = self.lookup_key(scope.path)
        if key is None:
            self.not_found(proto, scope.path)
            return
        span.set_attribute("pagemux.resource", key)

        redirect = self.redirects.get(key)
        if redirect is not None:
            span.set_attribute("pagemux.event", "redirect")
            span.set_attribute("pagemux.location", redirect.location)
            _send_empty(proto, redirect.code, [("location", redirect.location)])
            return

        controller = self.routes.get(key)
        if controller is None:
            span.set_attribute("pagemux.event", "static-file")
            if self.static.exists(key):
                try:
                    await self.static(scope, proto, key)
                except (ProtocolClosed, OSError) as e:
                    logger.error("cannot write response body: %s", e, extra=_COMPONENT)
                return
            self.not_found(proto, key)
            return

        span.set_attribute("pagemux.event", "handler")
        request = Request.from_scope(scope, proto, current_request_id())
        reply = await _handle(controller, request)

        if reply.error is not None:
            message = f"cannot handle request {key}: {reply.error!r}"
            span.set_attribute("pagemux.event", "controller-error")
            span.set_attribute("pagemux.message", message)
            logger.info("%s", message, extra=_COMPONENT)
            self.send_error(proto, reply.error, reply.body, reply.content_type)
            return

        if reply.status in REDIRECT_CODES:
            span.set_attribute("pagemux.event", "redirect")
            location = reply.location or request.url
            _send_empty(proto, reply.status, [("location", location)])
            return

        content_type = reply.content_type or DEFAULT_CONTENT_TYPE
        span.set_attribute("pagemux.event", "response")
        span.set_attribute("pagemux.code", reply.status)
        span.set_attribute("pagemux.content_type", content_type)
        _send(proto, reply.status, content_type, reply.body or b"")

    def not_found(self, proto: HTTPProtocol, key: str) -> None:
        message = f"static file {key} does not exist"
        span = trace.get_current_span()
        span.set_attribute("pagemux.event", "controller-error")
        span.set_attribute("pagemux.message", message)
        logger.info("%s", message, extra=_COMPONENT)
        self.send_error(proto, ProcessingError(404))

    def send_error(
        self,
        proto: HTTPProtocol,
        error: ProcessingError,
        body: bytes | None = None,
        content_type: str = "",
    ) -> None:
        """Send the status of error with body, or with its error page when body is None."""
        if body is None:
            try:
                body = self.error_pages.for_error(error)
            except ErrorPageError as e:
                logger.error("cannot read error page content: %s", e, extra=_COMPONENT)
                body = None
        _send(
            proto,
            error.response_code,
            content_type or DEFAULT_CONTENT_TYPE,
            body or b"",
        )


async def _handle(controller: Controller, request: Request) -> Reply:
    try:
        return await controller.handle(request)
    except ProcessingError as e:
        return Reply(status=e.response_code, error=e)
    except Exception:  # noqa: BLE001  - a failing controller must not take the server down
        logger.exception(
            "controller %r failed on %s", controller, request.path, extra=_COMPONENT
        )
        return Reply(status=500, error=ProcessingError(500))


def _send(proto: HTTPProtocol, status: int, content_type: str, body: bytes) -> None:
    try:
        proto.response_bytes(status, [("content-type", content_type)], body)
    except (ProtocolClosed, OSError) as e:
        logger.error("cannot write response body: %s", e, extra=_COMPONENT)


def _send_empty(
    proto: HTTPProtocol, status: int, headers: list[tuple[str, str]]
) -> None:
    try:
        proto.response_empty(status, headers)
    except (ProtocolClosed, OSError) as e:
        logger.error("cannot write response: %s", e, extra=_COMPONENT)


def create_service(
    config: Config,
    *,
    package: str | None = None,
    customize: Customizer | None = None,
    debug: bool | None = None,
    environ: Mapping[str, str] | None = None,
) -> Service:
    """Build the dispatcher from configuration.

    Args:
        config: Configuration source.
        package: Importable package bundling the templates and static
            directories, required when `http.content.useEmbedded` is true.
        customize: Called once with the route table built from
            `http.controllers`; may add, remove or replace controllers.
        debug: Verbose template logging. Defaults to `http.debug`.
        environ: Environment used to resolve `env.` redirect locations.

    Raises:
        ConfigurationError: configuration cannot produce a working service.
    """
    if debug is None:
        debug = config.get_bool("http.debug")
    environ = os.environ if environ is None else environ

    templates, static = resolve_asset_roots(config, package)
    includes = config.get_str_list("http.includes")
    renderer = Renderer(templates, includes=includes, debug=debug)

    routes = build_routes(
        renderer,
        config.get_str_map("http.controllers"),
        includes=includes,
        analytics_id=config.get_str("google.analytics.id"),
        customize=customize,
    )
    redirects = build_redirects(config.get_map("http.redirects"), environ=environ)
    error_pages = ErrorPageResolver(
        build_error_pages(config.get_str_map("http.errorPages")),
        renderer,
        static,
    )
    return Service(
        routes=routes,
        redirects=redirects,
        error_pages=error_pages,
        static=StaticFiles(static),
        context=normalize_context(config.get_str("http.context")),
    )
