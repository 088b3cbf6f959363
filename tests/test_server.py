from __future__ import annotations

import asyncio
import base64
import logging
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import pytest
from conftest import MockHTTPProtocol, mock_scope, site_config
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry

from pagemux.middleware.basic_auth import hash_password
from pagemux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler
from pagemux.server import chain, create_app, serve
from pagemux.service import create_service


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def provider(exporter: InMemorySpanExporter) -> TracerProvider:
    tp = TracerProvider()
    tp.add_span_processor(SimpleSpanProcessor(exporter))
    return tp


@pytest.fixture
def password_file(tmp_path: Path) -> Path:
    path = tmp_path / ".passwd"
    path.write_text(f"prometheus:{hash_password('scrape')}\n")
    return path


@pytest.fixture
def app(
    site: Path, password_file: Path, provider: TracerProvider
) -> RSGIHTTPHandler:
    return create_app(
        create_service(site_config(site)),
        registry=CollectorRegistry(),
        password_file=password_file,
        tracer_provider=provider,
        next_request_id=lambda: "rid-1",
    )


def basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


# --- composition ---


@pytest.mark.asyncio
async def test_chain_order() -> None:
    calls: list[str] = []

    def recorder(name: str) -> Middleware:
        def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
            async def wrapped(scope: HTTPScope, proto: HTTPProtocol) -> None:
                calls.append(name)
                await handler(scope, proto)

            return wrapped

        return middleware

    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        calls.append("handler")

    await chain(handler, recorder("outer"), recorder("inner"))(
        mock_scope(), MockHTTPProtocol()
    )
    assert calls == ["outer", "inner", "handler"]


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/healthz", "/ready"])
async def test_health_endpoints(
    app: RSGIHTTPHandler, exporter: InMemorySpanExporter, path: str
) -> None:
    proto = MockHTTPProtocol()
    await app(mock_scope(path=path), proto)
    assert proto.response_status == 200
    assert proto.response_body == b"ok"
    assert proto.header("x-request-id") == "rid-1"
    assert exporter.get_finished_spans() == ()


@pytest.mark.asyncio
async def test_page_is_traced_and_logged(
    app: RSGIHTTPHandler,
    exporter: InMemorySpanExporter,
    caplog: pytest.LogCaptureFixture,
) -> None:
    proto = MockHTTPProtocol()
    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await app(mock_scope(path="/about"), proto)

    assert proto.response_status == 200
    assert proto.header("x-request-id") == "rid-1"

    [span] = exporter.get_finished_spans()
    assert span.name == "GET /about"
    assert span.attributes is not None
    assert span.attributes["pagemux.resource"] == "about"
    assert span.attributes["pagemux.event"] == "response"
    assert span.attributes["http.response.status_code"] == 200

    [record] = [r for r in caplog.records if r.name == "pagemux.access"]
    assert record.request_id == "rid-1"  # ty: ignore[unresolved-attribute]
    assert record.status == 200  # ty: ignore[unresolved-attribute]


@pytest.mark.asyncio
async def test_metrics_require_credentials(app: RSGIHTTPHandler) -> None:
    proto = MockHTTPProtocol()
    await app(mock_scope(path="/metrics"), proto)
    assert proto.response_status == 401
    assert proto.header("www-authenticate") == "Basic realm=Restricted"


@pytest.mark.asyncio
async def test_metrics(app: RSGIHTTPHandler) -> None:
    await app(mock_scope(path="/about"), MockHTTPProtocol())

    proto = MockHTTPProtocol()
    headers = {"authorization": basic("prometheus", "scrape")}
    await app(mock_scope(path="/metrics", headers=headers), proto)

    assert proto.response_status == 200
    assert (proto.header("content-type") or "").startswith("text/plain")
    body = (proto.response_body or b"").decode()
    assert 'http_router_request_count{code="200",method="GET",path="/about"} 1.0' in body
    assert "http_router_request_duration{" in body
    assert 'path="/metrics"' not in body


def test_apps_can_share_a_registry(site: Path, password_file: Path) -> None:
    registry = CollectorRegistry()
    service = create_service(site_config(site))
    for _ in range(2):
        create_app(service, registry=registry, password_file=password_file)


# --- granian ---


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@asynccontextmanager
async def run_server(app: RSGIHTTPHandler) -> AsyncIterator[int]:
    """Start a granian embedded server, yield the port, then clean up."""
    port = _get_free_port()
    task = asyncio.create_task(serve(app, address="127.0.0.1", port=port))

    # Wait for TCP readiness
    for _ in range(100):
        try:
            _, w = await asyncio.open_connection("127.0.0.1", port)
            w.close()
            await w.wait_closed()
            break
        except (ConnectionRefusedError, OSError):
            await asyncio.sleep(0.1)
    else:
        task.cancel()
        pytest.fail("Server did not start within 10s")

    try:
        yield port
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@pytest.mark.asyncio
async def test_served_by_granian(app: RSGIHTTPHandler) -> None:
    async with (
        run_server(app) as port,
        httpx.AsyncClient(
            base_url=f"http://127.0.0.1:{port}", follow_redirects=False
        ) as client,
    ):
        response = await client.get("/about")
        assert response.status_code == 200
        assert response.headers["content-type"] == "text/html"
        assert response.headers["x-request-id"] == "rid-1"
        assert "<main>About about</main>" in response.text

        response = await client.get("/old-page")
        assert response.status_code == 302
        assert response.headers["location"] == "/new-page"

        response = await client.get("/missing.png")
        assert response.status_code == 404
        assert "<h1>404</h1>" in response.text

        response = await client.get("/styles.css", headers={"range": "bytes=0-3"})
        assert response.status_code == 206
        assert response.content == b"body"
