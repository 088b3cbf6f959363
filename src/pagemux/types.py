"""Request, reply and controller types shared by the dispatcher and controllers."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from pagemux.errors import PagemuxError

if TYPE_CHECKING:
    from pagemux.rsgi import HTTPProtocol, HTTPScope

REDIRECT_CODES: frozenset[int] = frozenset({301, 302, 303, 307, 308})


class ProcessingError(PagemuxError):
    """Deliberate controller failure.

    `response_code` selects the error page; `data` is handed to templated
    error pages as their rendering context.
    """

    def __init__(self, response_code: int, data: Any = None) -> None:
        self.response_code = response_code
        self.data = data
        super().__init__(response_code)

    def __repr__(self) -> str:
        return f"ProcessingError(response_code={self.response_code!r}, data={self.data!r})"

    def __str__(self) -> str:
        return f"processing error {self.response_code}"


@dataclass(frozen=True, slots=True)
class Reply:
    """What a controller produced.

    Either the success fields (status, content_type, body) are meaningful and
    `error` is None, or `error` is set and the rest is best effort: a body
    supplied alongside an error replaces the configured error page.
    """

    status: int = 200
    location: str = ""
    content_type: str = ""
    body: bytes | None = None
    error: ProcessingError | None = None

    @classmethod
    def ok(
        cls, body: bytes | str, content_type: str = "text/html", status: int = 200
    ) -> Reply:
        if isinstance(body, str):
            body = body.encode("utf-8")
        return cls(status=status, content_type=content_type, body=body)

    @classmethod
    def redirect(cls, location: str = "", status: int = 302) -> Reply:
        """Redirect to location; an empty location redirects to the request URL."""
        if status not in REDIRECT_CODES:
            msg = f"{status} is not a redirect status"
            raise ValueError(msg)
        return cls(status=status, location=location)

    @classmethod
    def failure(
        cls,
        response_code: int,
        data: Any = None,
        *,
        body: bytes | None = None,
        content_type: str = "",
    ) -> Reply:
        return cls(
            status=response_code,
            content_type=content_type,
            body=body,
            error=ProcessingError(response_code, data),
        )


@dataclass(frozen=True, slots=True)
class Request:
    """The inbound request as seen by a controller."""

    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    client: str = ""
    request_id: str = "unknown"
    _proto: HTTPProtocol | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_scope(
        cls, scope: HTTPScope, proto: HTTPProtocol, request_id: str = "unknown"
    ) -> Request:
        return cls(
            method=scope.method,
            path=scope.path,
            query_string=scope.query_string,
            headers=scope.headers,
            client=scope.client,
            request_id=request_id,
            _proto=proto,
        )

    @property
    def url(self) -> str:
        """Path plus query string, as sent by the client."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    async def body(self) -> bytes:
        if self._proto is None:
            return b""
        return await self._proto()


class Controller(Protocol):
    async def handle(self, request: Request) -> Reply: ...


type Customizer = Callable[
    [dict[str, Controller]], dict[str, Controller] | None
]
