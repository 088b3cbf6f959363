"""Built-in controllers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pagemux.templating import Renderer
    from pagemux.types import Reply, Request


@dataclass(frozen=True, slots=True)
class Page:
    """Everything a page template can see about the page being rendered."""

    path: str
    template: str
    includes: tuple[str, ...] = ()
    response_code: int = 0  # 0 means 200
    content_type: str = ""  # "" means text/html
    analytics_id: str = ""

    def is_active(self, path: str) -> str:
        """CSS classes for a navigation link pointing at path."""
        if self.path == path.lstrip("/"):
            return "link link-selected"
        return "link"


class ModelController:
    """Renders a page template with the page itself as context."""

    __slots__ = ("page", "renderer")

    def __init__(self, page: Page, renderer: Renderer) -> None:
        self.page = page
        self.renderer = renderer

    def __repr__(self) -> str:
        return f"ModelController({self.page.path!r} -> {self.page.template!r})"

    async def handle(self, request: Request) -> Reply:  # noqa: ARG002
        return self.renderer.render(
            self.page.template,
            {"page": self.page},
            includes=self.page.includes,
            status=self.page.response_code,
            content_type=self.page.content_type,
        )
