import logging
from typing import cast

import pytest
from conftest import MockHTTPProtocol, mock_scope
from prometheus_client import CollectorRegistry

from pagemux.middleware.access_log import (
    access_log,
    client_ip,
    request_metrics,
    request_uri,
)
from pagemux.middleware.tracing import tracing
from pagemux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


def logged(registry: CollectorRegistry, handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
    return cast("RSGIHTTPHandler", access_log(registry=registry)(handler))


def access_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "pagemux.access"]


# --- client address ---


@pytest.mark.parametrize(
    "headers, client, expected",
    [
        ({}, "10.0.0.1", "10.0.0.1"),
        ({}, "10.0.0.1:5555", "10.0.0.1"),
        ({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}, "10.0.0.1:5555", "203.0.113.9"),
        ({"x-forwarded-for": "203.0.113.9:443"}, "10.0.0.1", "203.0.113.9"),
        ({"x-forwarded-for": "[2001:db8::1]:443"}, "10.0.0.1", "2001:db8::1"),
        ({}, "2001:db8::1", "2001:db8::1"),
    ],
)
def test_client_ip(headers: dict[str, str], client: str, expected: str) -> None:
    assert client_ip(mock_scope(headers=headers, client=client)) == expected


def test_request_uri() -> None:
    assert request_uri(mock_scope(path="/a")) == "/a"
    assert request_uri(mock_scope(path="/a", query_string="b=1")) == "/a?b=1"


# --- records ---


@pytest.mark.asyncio
async def test_logs_status_and_size(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_bytes(201, [], b"created")

    scope = mock_scope(
        path="/about", query_string="x=1", headers={"user-agent": "curl/8"}
    )
    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await logged(registry, handler)(scope, MockHTTPProtocol())

    [record] = access_records(caplog)
    assert record.status == 201  # ty: ignore[unresolved-attribute]
    assert record.size == 7  # ty: ignore[unresolved-attribute]
    assert record.uri == "/about?x=1"  # ty: ignore[unresolved-attribute]
    assert record.user_agent == "curl/8"  # ty: ignore[unresolved-attribute]
    assert record.method == "GET"  # ty: ignore[unresolved-attribute]
    assert record.duration >= 0  # ty: ignore[unresolved-attribute]
    assert "GET 201 /about?x=1" in record.getMessage()


@pytest.mark.asyncio
async def test_status_defaults_to_200(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    async def silent(scope: HTTPScope, proto: HTTPProtocol) -> None:
        pass

    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await logged(registry, silent)(mock_scope(), MockHTTPProtocol())

    [record] = access_records(caplog)
    assert record.status == 200  # ty: ignore[unresolved-attribute]
    assert record.size == 0  # ty: ignore[unresolved-attribute]


@pytest.mark.asyncio
async def test_recorded_status_matches_sent_status(registry: CollectorRegistry) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_empty(302, [("location", "/x")])

    proto = MockHTTPProtocol()
    await logged(registry, handler)(mock_scope(path="/old"), proto)

    assert proto.response_status == 302
    assert registry.get_sample_value(
        "http_router_request_count", {"code": "302", "method": "GET", "path": "/old"}
    ) == 1.0


@pytest.mark.asyncio
async def test_counts_streamed_bytes(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        transport = proto.response_stream(200, [])
        await transport.send_bytes(b"abc")
        await transport.send_str("de")

    proto = MockHTTPProtocol()
    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await logged(registry, handler)(mock_scope(), proto)

    assert proto.stream_transport is not None
    assert proto.stream_transport.get_data() == b"abcde"
    [record] = access_records(caplog)
    assert record.size == 5  # ty: ignore[unresolved-attribute]


@pytest.mark.asyncio
async def test_logs_request_id_from_tracing(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_empty(200, [])

    app = tracing(next_request_id=lambda: "rid-7")(logged(registry, handler))
    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await app(mock_scope(), MockHTTPProtocol())

    [record] = access_records(caplog)
    assert record.request_id == "rid-7"  # ty: ignore[unresolved-attribute]


@pytest.mark.asyncio
async def test_logs_when_handler_raises(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture
) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        msg = "boom"
        raise RuntimeError(msg)

    with caplog.at_level(logging.INFO, logger="pagemux.access"), pytest.raises(RuntimeError):
        await logged(registry, handler)(mock_scope(), MockHTTPProtocol())

    assert len(access_records(caplog)) == 1


# --- metrics ---


@pytest.mark.asyncio
async def test_observes_gauge_and_summary(registry: CollectorRegistry) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_bytes(404, [], b"missing")

    app = logged(registry, handler)
    for _ in range(2):
        await app(mock_scope(path="/missing.png"), MockHTTPProtocol())

    labels = {"code": "404", "method": "GET", "path": "/missing.png"}
    assert registry.get_sample_value("http_router_request_count", labels) == 2.0
    assert registry.get_sample_value("http_router_request_sum", labels) is not None
    gauge = registry.get_sample_value("http_router_request_duration", labels)
    assert gauge is not None
    assert gauge >= 0


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/healthz", "/ready", "/metrics"])
async def test_exempt_paths_are_not_recorded(
    registry: CollectorRegistry, caplog: pytest.LogCaptureFixture, path: str
) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_str(200, [], "ok")

    with caplog.at_level(logging.INFO, logger="pagemux.access"):
        await logged(registry, handler)(mock_scope(path=path), MockHTTPProtocol())

    assert access_records(caplog) == []
    labels = {"code": "200", "method": "GET", "path": path}
    assert registry.get_sample_value("http_router_request_count", labels) is None


def test_metrics_are_shared_per_registry(registry: CollectorRegistry) -> None:
    first = request_metrics(registry)
    assert request_metrics(registry) is first
    assert request_metrics(CollectorRegistry()) is not first


@pytest.mark.asyncio
async def test_apps_on_one_registry_share_metrics(registry: CollectorRegistry) -> None:
    async def handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
        proto.response_bytes(200, [], b"ok")

    first = logged(registry, handler)
    second = logged(registry, handler)
    await first(mock_scope(path="/a"), MockHTTPProtocol())
    await second(mock_scope(path="/a"), MockHTTPProtocol())

    labels = {"code": "200", "method": "GET", "path": "/a"}
    assert registry.get_sample_value("http_router_request_count", labels) == 2.0
