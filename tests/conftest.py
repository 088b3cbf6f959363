from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import pytest

from pagemux.config import Config
from pagemux.rsgi import HTTPScope


@dataclass
class MockHTTPScope:
    proto: Literal["http"] = "http"
    http_version: Literal["1", "1.1", "2"] = "1.1"
    rsgi_version: str = "1.0"
    server: str = "localhost"
    client: str = "127.0.0.1"
    scheme: str = "http"
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    authority: str | None = None


class MockHTTPStreamTransport:
    """Mock stream transport that captures sent data."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        self.chunks.append(data)

    async def send_str(self, data: str) -> None:
        self.chunks.append(data.encode("utf-8"))

    def get_data(self) -> bytes:
        return b"".join(self.chunks)


class MockHTTPProtocol:
    """Mock protocol that captures response data."""

    def __init__(self, body: bytes = b"") -> None:
        self.request_body = body
        self.response_status: int | None = None
        self.response_headers: list[tuple[str, str]] | None = None
        self.response_body: bytes | None = None
        self.response_file_path: str | None = None
        self.response_range: tuple[int, int] | None = None
        self.stream_transport: MockHTTPStreamTransport | None = None
        self.calls = 0

    async def __call__(self) -> bytes:
        return self.request_body

    def __aiter__(self) -> bytes:
        raise NotImplementedError

    async def client_disconnect(self) -> None:
        raise NotImplementedError

    def _respond(self, status: int, headers: list[tuple[str, str]]) -> None:
        self.calls += 1
        self.response_status = status
        self.response_headers = headers

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self._respond(status, headers)
        self.response_body = b""

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self._respond(status, headers)
        self.response_body = body.encode("utf-8")

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self._respond(status, headers)
        self.response_body = body

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self._respond(status, headers)
        self.response_file_path = file
        self.response_body = Path(file).read_bytes()

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self._respond(status, headers)
        self.response_file_path = file
        self.response_range = (start, end)
        self.response_body = Path(file).read_bytes()[start:end]

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> MockHTTPStreamTransport:
        self._respond(status, headers)
        self.stream_transport = MockHTTPStreamTransport()
        return self.stream_transport

    def header(self, name: str) -> str | None:
        """First response header called name, case-insensitively."""
        for key, value in self.response_headers or []:
            if key.lower() == name.lower():
                return value
        return None

    def header_values(self, name: str) -> list[str]:
        return [
            value
            for key, value in self.response_headers or []
            if key.lower() == name.lower()
        ]


def mock_scope(
    path: str = "/",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query_string: str = "",
    client: str = "127.0.0.1",
) -> HTTPScope:
    return MockHTTPScope(
        path=path,
        method=method,
        headers=headers or {},
        query_string=query_string,
        client=client,
    )


# --- site fixtures -------------------------------------------------------------
@pytest.fixture
def site(tmp_path: Path) -> Path:
    """A small site on disk with templates and static content."""
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "header.jinja").write_text(
        "<header><a class=\"{{ page.is_active('about') }}\" href=\"/about\">About</a></header>"
    )
    (templates / "about.jinja").write_text(
        "{% include 'header.jinja' %}<main>About {{ page.path }}</main>"
    )
    (templates / "index.jinja").write_text(
        "{% include 'header.jinja' %}<main>Home</main>"
    )
    (templates / "broken.jinja").write_text("{% if %}")
    (templates / "400.jinja").write_text(
        "<p>Bad field: {{ data.field }}</p>"
        "{% if isset('hint', data) %}<p>{{ data.hint }}</p>{% endif %}"
    )

    static = tmp_path / "static"
    static.mkdir()
    (static / "styles.css").write_text("body { color: red; }" + " " * 500)
    (static / "logo.png").write_bytes(b"\x89PNG\r\n" + b"x" * 100)
    (static / "custom-403.html").write_text("<h1>custom forbidden</h1>")
    docs = static / "docs"
    docs.mkdir()
    (docs / "index.html").write_text("<h1>docs</h1>")
    return tmp_path


def site_config(site: Path, **http: Any) -> Config:
    document: dict[str, Any] = {
        "http": {
            "content": {
                "useEmbedded": False,
                "templatesDirectory": str(site / "templates"),
                "staticDirectory": str(site / "static"),
            },
            "controllers": {"about": "about.jinja", "": "index.jinja"},
            "includes": ["header.jinja"],
            "redirects": {"old-page": {"location": "/new-page", "code": 302}},
            **http,
        }
    }
    return Config(document, environ={})
