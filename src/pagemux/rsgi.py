"""RSGI protocol types.

Structural types for the subset of the RSGI spec served by granian that
pagemux handlers rely on, plus a forwarding proxy used by middleware that need
to observe or decorate responses.

Reference: https://github.com/emmett-framework/granian/blob/master/docs/spec/RSGI.md
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Mapping
from typing import Literal, Protocol


class HTTPScope(Protocol):
    proto: Literal["http"]
    http_version: Literal["1", "1.1", "2"]
    rsgi_version: str
    server: str
    client: str
    scheme: str
    method: str
    path: str
    query_string: str
    headers: Mapping[str, str]
    authority: str | None


class HTTPStreamTransport(Protocol):
    async def send_bytes(self, data: bytes) -> None: ...

    async def send_str(self, data: str) -> None: ...


class HTTPProtocol(Protocol):
    async def __call__(self) -> bytes: ...

    def __aiter__(self) -> bytes: ...

    async def client_disconnect(self) -> None: ...

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None: ...

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None: ...

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None: ...

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None: ...

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None: ...

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport: ...


type RSGIHTTPHandler = Callable[[HTTPScope, HTTPProtocol], Awaitable[None]]
type Middleware = Callable[[RSGIHTTPHandler], RSGIHTTPHandler]


class _CountingStreamTransport:
    """Counts bytes sent through a stream transport on behalf of a proxy."""

    __slots__ = ("_owner", "_transport")

    def __init__(
        self, transport: HTTPStreamTransport, owner: HTTPProtocolProxy
    ) -> None:
        self._transport = transport
        self._owner = owner

    async def send_bytes(self, data: bytes) -> None:
        await self._transport.send_bytes(data)
        self._owner._record_body(len(data))

    async def send_str(self, data: str) -> None:
        await self._transport.send_str(data)
        self._owner._record_body(len(data.encode("utf-8")))


class HTTPProtocolProxy:
    """Forwards every call to the wrapped HTTPProtocol.

    Subclasses override `_response_headers` to decorate outgoing headers and
    `_record_status` / `_record_body` to observe what was sent. Each proxy is
    owned by exactly one request.
    """

    __slots__ = ("_proto",)

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto

    # --- hooks ---------------------------------------------------------------
    def _response_headers(
        self, headers: list[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        return headers

    def _record_status(self, status: int) -> None:
        pass

    def _record_body(self, size: int) -> None:
        pass

    # --- request side --------------------------------------------------------
    async def __call__(self) -> bytes:
        return await self._proto()

    def __aiter__(self) -> bytes:
        return self._proto.__aiter__()

    async def client_disconnect(self) -> None:
        await self._proto.client_disconnect()

    # --- response side -------------------------------------------------------
    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self._record_status(status)
        self._proto.response_empty(status, self._response_headers(headers))

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self._record_status(status)
        self._proto.response_str(status, self._response_headers(headers), body)
        self._record_body(len(body.encode("utf-8")))

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self._record_status(status)
        self._proto.response_bytes(status, self._response_headers(headers), body)
        self._record_body(len(body))

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self._record_status(status)
        self._proto.response_file(status, self._response_headers(headers), file)
        try:
            size = os.path.getsize(file)
        except OSError:
            size = 0
        self._record_body(size)

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self._record_status(status)
        self._proto.response_file_range(
            status, self._response_headers(headers), file, start, end
        )
        self._record_body(max(end - start, 0))

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport:
        self._record_status(status)
        transport = self._proto.response_stream(
            status, self._response_headers(headers)
        )
        return _CountingStreamTransport(transport, self)
