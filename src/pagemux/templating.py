"""Template rendering shared by every controller and by templated error pages."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import jinja2

from pagemux.types import ProcessingError, Reply

if TYPE_CHECKING:
    from pagemux.assets import AssetRoot

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".jinja"

_SCALARS = (str, bytes, int, float, bool, list, tuple, set, frozenset)


def isset(name: str, value: Any) -> bool:
    """Report whether `value` has a field called `name`.

    Mappings are checked for the key, dataclasses for the field and other
    objects for the attribute. Scalars and None never have fields.
    """
    if value is None or isinstance(value, _SCALARS):
        return False
    if isinstance(value, Mapping):
        return name in value
    if dataclasses.is_dataclass(value):
        return any(f.name == name for f in dataclasses.fields(value))
    return hasattr(value, name)


def is_template(name: str) -> bool:
    return name.endswith(TEMPLATE_SUFFIX)


class Renderer:
    """Applies named templates from a template root to a context."""

    __slots__ = ("debug", "environment", "includes")

    def __init__(
        self,
        templates: AssetRoot,
        *,
        includes: Iterable[str] = (),
        debug: bool = False,
        globals: Mapping[str, Any] | None = None,  # noqa: A002
    ) -> None:
        self.includes = tuple(includes)
        self.debug = debug
        self.environment = jinja2.Environment(
            loader=templates.template_loader(),
            autoescape=jinja2.select_autoescape(
                ("html", "htm", "xml", TEMPLATE_SUFFIX.lstrip("."))
            ),
            auto_reload=True,
        )
        self.environment.globals["isset"] = isset
        if globals:
            self.environment.globals.update(globals)

    def compile(
        self, name: str, includes: Iterable[str] | None = None
    ) -> jinja2.Template:
        """Compile name after every include, so a broken include fails here."""
        for include in self.includes if includes is None else includes:
            self.environment.get_template(include)
        return self.environment.get_template(name)

    def render_bytes(
        self,
        name: str,
        context: Mapping[str, Any],
        includes: Iterable[str] | None = None,
    ) -> bytes:
        """Render name with context. Compile and render failures propagate."""
        if self.debug:
            logger.info("using %s template", name, extra={"component": "templates"})
        template = self.compile(name, includes)
        return template.render(context).encode("utf-8")

    def render(
        self,
        name: str,
        context: Mapping[str, Any],
        *,
        includes: Iterable[str] | None = None,
        status: int = 0,
        content_type: str = "",
    ) -> Reply:
        """Render into a Reply; failures become a 500 ProcessingError."""
        try:
            body = self.render_bytes(name, context, includes)
        except Exception as e:  # noqa: BLE001  - template code can raise anything
            logger.error(
                "cannot render template %s: %s",
                name,
                e,
                extra={"component": "templates"},
            )
            return Reply(status=500, error=ProcessingError(500))
        return Reply(
            status=status or 200,
            content_type=content_type or "text/html",
            body=body,
        )
