"""Produces the body for a failure status."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pagemux.assets import DEFAULT_ERROR_PAGES
from pagemux.errors import ErrorPageError

if TYPE_CHECKING:
    from pagemux.assets import AssetRoot
    from pagemux.routes import ErrorPage
    from pagemux.templating import Renderer
    from pagemux.types import ProcessingError

logger = logging.getLogger(__name__)


class ErrorPageResolver:
    """Looks up the page for a status and reads or renders it.

    Resolution never falls back to another error page: a page that cannot be
    produced raises ErrorPageError and the caller decides what to send.
    """

    __slots__ = ("defaults", "pages", "renderer", "static")

    def __init__(
        self,
        pages: Mapping[int, ErrorPage],
        renderer: Renderer,
        static: AssetRoot,
        defaults: AssetRoot = DEFAULT_ERROR_PAGES,
    ) -> None:
        self.pages = pages
        self.renderer = renderer
        self.static = static
        self.defaults = defaults

    def resolve(self, code: int, data: Any = None) -> bytes | None:
        """Body for code, or None when no page is configured for it."""
        page = self.pages.get(code)
        if page is None:
            return None

        if page.is_template:
            context = {
                "code": code,
                "data": page.data if data is None else data,
            }
            try:
                return self.renderer.render_bytes(page.name, context)
            except Exception as e:  # noqa: BLE001  - template code can raise anything
                logger.error(
                    "cannot render error page template %s: %s",
                    page.name,
                    e,
                    extra={"component": "service"},
                )
                raise ErrorPageError(code, page.name, e) from e

        source = self.defaults if page.is_default else self.static
        try:
            return source.read_bytes(page.name)
        except OSError as e:
            logger.error(
                "cannot read error page %s from %r: %s",
                page.name,
                source,
                e,
                extra={"component": "service"},
            )
            raise ErrorPageError(code, page.name, e) from e

    def for_error(self, error: ProcessingError) -> bytes | None:
        return self.resolve(error.response_code, error.data)
