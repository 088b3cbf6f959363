"""Builds the route, redirect and error page tables from configuration.

All three tables are built once when the service is created and are exposed
as read-only mappings afterwards.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pagemux.controllers import ModelController, Page
from pagemux.errors import ConfigurationError
from pagemux.templating import is_template

if TYPE_CHECKING:
    from pagemux.templating import Renderer
    from pagemux.types import Controller, Customizer

logger = logging.getLogger(__name__)

ENV_PREFIX = "env."
DEFAULT_REDIRECT_CODE = 301
DEFAULT_ERROR_CODES: tuple[int, ...] = (400, 401, 403, 404, 405, 500)


@dataclass(frozen=True, slots=True)
class Redirect:
    location: str
    code: int = DEFAULT_REDIRECT_CODE


@dataclass(frozen=True, slots=True)
class ErrorPage:
    """Where the body for a failure status comes from.

    `is_default` pages are read from the bundled defaults, templates are
    rendered from the template root, anything else is read from the static
    root. `data` is the rendering context used when the failure carries none.
    """

    name: str
    is_default: bool = True
    is_template: bool = False
    data: Any = None


def route_key(path: str) -> str:
    return path.lstrip("/")


def build_routes(
    renderer: Renderer,
    controllers: Mapping[str, str],
    *,
    includes: Iterable[str] = (),
    analytics_id: str = "",
    customize: Customizer | None = None,
) -> Mapping[str, Controller]:
    """Bind one model controller per configured path, then let customize edit the table."""
    includes = tuple(includes)
    routes: dict[str, Controller] = {}
    for path, template in controllers.items():
        key = route_key(path)
        routes[key] = ModelController(
            Page(
                path=key,
                template=template,
                includes=includes,
                analytics_id=analytics_id,
            ),
            renderer,
        )

    if customize is not None:
        customized = customize(routes)
        if customized is not None:
            routes = customized

    # customization may add keys with a leading slash
    table = {route_key(key): controller for key, controller in routes.items()}
    logger.info(
        "built route table with %d entries", len(table), extra={"component": "service"}
    )
    return MappingProxyType(table)


def _redirect_code(path: str, value: Any) -> int:
    if value is None:
        return DEFAULT_REDIRECT_CODE
    if isinstance(value, bool):
        code = None
    else:
        try:
            code = int(value)
        except (TypeError, ValueError):
            code = None
    if code is None or not 300 <= code <= 399:
        msg = f"redirect for {path!r} has invalid status code {value!r}"
        raise ConfigurationError(msg)
    return code


def build_redirects(
    redirects: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
) -> Mapping[str, Redirect]:
    """Resolve configured redirects; `env.NAME` locations are read from the environment."""
    environ = os.environ if environ is None else environ
    table: dict[str, Redirect] = {}
    for path, definition in redirects.items():
        if not isinstance(definition, Mapping):
            msg = f"redirect for {path!r} must be a mapping with a location"
            raise ConfigurationError(msg)
        fields = {str(name).lower(): value for name, value in definition.items()}
        location = fields.get("location")
        if not isinstance(location, str):
            msg = f"redirect for {path!r} has no location"
            raise ConfigurationError(msg)
        if location.startswith(ENV_PREFIX):
            location = environ.get(location.removeprefix(ENV_PREFIX), "")
        table[route_key(path)] = Redirect(
            location=location, code=_redirect_code(path, fields.get("code"))
        )
    return MappingProxyType(table)


def default_error_pages() -> dict[int, ErrorPage]:
    return {code: ErrorPage(name=f"{code}.html") for code in DEFAULT_ERROR_CODES}


def build_error_pages(overrides: Mapping[str, str]) -> Mapping[int, ErrorPage]:
    """The default error pages with configured overrides applied."""
    table = default_error_pages()
    for key, name in overrides.items():
        try:
            code = int(key)
        except ValueError:
            code = 0
        if not 100 <= code <= 599:
            msg = f"unexpected error code {key!r} in error pages definition"
            raise ConfigurationError(msg)
        override = {"name": name, "is_default": False, "is_template": is_template(name)}
        existing = table.get(code)
        table[code] = (
            replace(existing, **override)
            if existing is not None
            else ErrorPage(**override)
        )
    return MappingProxyType(table)
