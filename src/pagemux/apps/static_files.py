"""Static files app with conditional, range and compressed responses.

The static root is indexed at startup. Compressible files get zstd, brotli and
gzip variants kept in memory when they come out smaller than the original.

Roots whose files may change while serving (`AssetRoot.live`) are checked on
every request: a file is re-read when its size or mtime differs from the
indexed copy, files added later are picked up and deleted files disappear.
Other roots are served from the startup index, from memory.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import stat
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from email.utils import formatdate, parsedate_to_datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Literal

from cramjam import (
    brotli,  # ty: ignore[unresolved-import]  # fixed in cramjam >2.11
    gzip,  # ty: ignore[unresolved-import]  # fixed in cramjam >2.11
    zstd,  # ty: ignore[unresolved-import]  # fixed in cramjam >2.11
)

if TYPE_CHECKING:
    from pagemux.assets import AssetRoot
    from pagemux.rsgi import HTTPProtocol, HTTPScope

logger = logging.getLogger(__name__)

type Encoding = Literal["zstd", "br", "gzip"]

DEFAULT_COMPRESSIBLE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".css",
        ".js",
        ".mjs",
        ".cjs",
        ".html",
        ".htm",
        ".xml",
        ".svg",
        ".json",
        ".map",
        ".txt",
        ".md",
        ".wasm",
    }
)

INDEX_FILE = "index.html"

_LEVELS: dict[str, int] = {"zstd": 19, "br": 11, "gzip": 9}


@dataclass(frozen=True, slots=True)
class StaticFile:
    """An indexed static file."""

    key: str  # relative path within the static root
    content_type: str
    size: int
    etag: str  # quoted strong validator
    last_modified: float | None
    path_str: str | None  # set when the file is on disk
    content: bytes | None  # set when the file is not on disk
    variants: Mapping[str, bytes]  # encoding -> compressed body
    signature: tuple[int, int] | None = None  # (size, mtime_ns) when read from disk


def _compress(data: bytes, encoding: str) -> bytes:
    level = _LEVELS[encoding]
    if encoding == "zstd":
        return bytes(zstd.compress(data, level=level))
    elif encoding == "br":
        return bytes(brotli.compress(data, level=level))
    else:  # gzip
        return bytes(gzip.compress(data, level=level))


def _content_type(key: str) -> str:
    mime_type, _ = mimetypes.guess_type(key)
    if mime_type is None:
        return "application/octet-stream"
    if mime_type.startswith("text/") or mime_type in (
        "application/javascript",
        "application/json",
        "image/svg+xml",
    ):
        return f"{mime_type}; charset=utf-8"
    return mime_type


def _parse_accept_encoding(header: str) -> list[tuple[str, float]]:
    """Parse Accept-Encoding into (encoding, quality) pairs."""
    encodings: list[tuple[str, float]] = []
    for part in header.split(","):
        name, _, params = part.partition(";")
        name = name.strip().lower()
        if not name:
            continue
        quality = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                quality = float(params[2:])
            except ValueError:
                quality = 1.0
        encodings.append((name, quality))
    return encodings


def _select_encoding(
    accept_encoding: str | None,
    server_priority: Mapping[str, int],
    available: Iterable[str],
) -> str:
    """Best available encoding for the client, or "identity".

    Client quality wins; ties go to the server's priority order.
    """
    if not accept_encoding:
        return "identity"

    wildcard = 0.0
    explicit: dict[str, float] = {}
    for name, quality in _parse_accept_encoding(accept_encoding):
        if name == "*":
            wildcard = quality
        else:
            explicit[name] = quality

    candidates: list[tuple[float, int, str]] = []
    for encoding in available:
        quality = explicit.get(encoding, wildcard)
        if quality > 0:
            candidates.append(
                (-quality, server_priority.get(encoding, 999), encoding)
            )
    if not candidates:
        return "identity"
    return min(candidates)[2]


def _etag_matches(header: str, etag: str) -> bool:
    """Weak comparison of If-None-Match against etag."""
    if header.strip() == "*":
        return True
    bare = etag.removeprefix("W/")
    return any(
        candidate.strip().removeprefix("W/") == bare for candidate in header.split(",")
    )


def _not_modified_since(header: str, last_modified: float | None) -> bool:
    if last_modified is None:
        return False
    try:
        since = parsedate_to_datetime(header).timestamp()
    except (TypeError, ValueError, IndexError):
        return False
    return int(last_modified) <= int(since)


def _parse_range(header: str, size: int) -> tuple[int, int] | None | Literal[False]:
    """Parse a single byte range into (start, end_inclusive).

    Returns None when the header should be ignored (malformed or multiple
    ranges) and False when the range cannot be satisfied.
    """
    unit, _, spec = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in spec:
        return None
    first, sep, last = spec.strip().partition("-")
    if not sep:
        return None
    try:
        if first == "":
            suffix = int(last)
            if suffix <= 0:
                return False
            return max(size - suffix, 0), size - 1
        start = int(first)
        end = int(last) if last else size - 1
    except ValueError:
        return None
    if start < 0:
        return None
    if start >= size:
        return False
    if end < start:
        return None
    return start, min(end, size - 1)


def _signature(path_str: str) -> tuple[int, int] | None:
    """(size, mtime_ns) of a regular file, or None when it is gone."""
    try:
        st = os.stat(path_str)
    except OSError:
        return None
    if not stat.S_ISREG(st.st_mode):
        return None
    return st.st_size, st.st_mtime_ns


def _file_key(key: str) -> str:
    """The file behind key: "" and "dir/" name their index file."""
    if key == "" or key.endswith("/"):
        return key + INDEX_FILE
    return key


def _load(
    assets: AssetRoot,
    key: str,
    encodings: tuple[str, ...],
    compressible_extensions: frozenset[str],
    signature: tuple[int, int] | None = None,
) -> StaticFile:
    content = assets.read_bytes(key)
    path_str = assets.file_path(key)
    variants: dict[str, bytes] = {}
    dot = key.rfind(".")
    extension = key[dot:].lower() if dot != -1 else ""
    if extension in compressible_extensions:
        for encoding in encodings:
            compressed = _compress(content, encoding)
            if len(compressed) < len(content):
                variants[encoding] = compressed
    if signature is not None:
        last_modified: float | None = signature[1] / 1e9
    else:
        last_modified = assets.modified(key)
    return StaticFile(
        key=key,
        content_type=_content_type(key),
        size=len(content),
        etag=f'"{hashlib.sha256(content).hexdigest()[:16]}"',
        last_modified=last_modified,
        path_str=path_str,
        content=None if path_str is not None else content,
        variants=MappingProxyType(variants),
        signature=signature,
    )


def _index(
    assets: AssetRoot,
    encodings: tuple[str, ...],
    compressible_extensions: frozenset[str],
) -> dict[str, StaticFile]:
    files: dict[str, StaticFile] = {}
    for key in assets.walk():
        signature = None
        if assets.live:
            path_str = assets.file_path(key)
            signature = _signature(path_str) if path_str is not None else None
        files[key] = _load(
            assets, key, encodings, compressible_extensions, signature
        )
    return files


class StaticFiles:
    """Serves the files of a static asset root."""

    __slots__ = (
        "_compressible_extensions",
        "_directories",
        "_encodings",
        "_files",
        "_server_priority",
        "assets",
    )

    def __init__(
        self,
        assets: AssetRoot,
        *,
        encodings: Iterable[Encoding] = ("zstd", "br", "gzip"),
        compressible_extensions: Iterable[str] = DEFAULT_COMPRESSIBLE_EXTENSIONS,
    ) -> None:
        self.assets = assets
        self._encodings: tuple[str, ...] = tuple(encodings)
        self._compressible_extensions = frozenset(compressible_extensions)
        self._server_priority = MappingProxyType(
            {encoding: i for i, encoding in enumerate(self._encodings)}
        )

        start_time = time.perf_counter()
        files = _index(assets, self._encodings, self._compressible_extensions)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        directories: set[str] = set()
        if not assets.live:
            for key in list(files):
                if key == INDEX_FILE or key.endswith("/" + INDEX_FILE):
                    directory = key.removesuffix(INDEX_FILE)
                    files[directory] = files[key]
                    if directory:
                        directories.add(directory.removesuffix("/"))
        # mutated for live roots only
        self._files = files
        self._directories = frozenset(directories)

        logger.info(
            "static_files: %d files (%d compressed) from %r, %.1fms",
            len({entry.key for entry in files.values()}),
            sum(1 for entry in files.values() if entry.variants),
            assets,
            elapsed_ms,
            extra={"component": "service"},
        )

    def is_directory(self, key: str) -> bool:
        """True if key names a directory with an index file."""
        if not self.assets.live:
            return key in self._directories
        if key == "" or key.endswith("/"):
            return False
        return self.assets.is_dir(key) and self.assets.exists(f"{key}/{INDEX_FILE}")

    def exists(self, key: str) -> bool:
        return self.is_directory(key) or self.lookup(key) is not None

    def lookup(self, key: str) -> StaticFile | None:
        if not self.assets.live:
            return self._files.get(key)
        return self._refresh(_file_key(key))

    def _refresh(self, key: str) -> StaticFile | None:
        """The entry for a file of a live root, re-read when it changed on disk."""
        path_str = self.assets.file_path(key)
        signature = _signature(path_str) if path_str is not None else None
        if signature is None:
            self._files.pop(key, None)
            return None
        entry = self._files.get(key)
        if entry is not None and entry.signature == signature:
            return entry
        try:
            entry = _load(
                self.assets,
                key,
                self._encodings,
                self._compressible_extensions,
                signature,
            )
        except OSError as e:
            logger.info(
                "static_files: cannot read %s: %s", key, e, extra={"component": "service"}
            )
            self._files.pop(key, None)
            return None
        logger.debug(
            "static_files: indexed %s (%d bytes)",
            key,
            entry.size,
            extra={"component": "service"},
        )
        self._files[key] = entry
        return entry

    async def __call__(self, scope: HTTPScope, proto: HTTPProtocol, key: str) -> None:
        if self.is_directory(key):
            query = f"?{scope.query_string}" if scope.query_string else ""
            proto.response_empty(301, [("location", f"{scope.path}/{query}")])
            return

        entry = self.lookup(key)
        if entry is None:
            proto.response_bytes(404, [("content-type", "text/plain")], b"Not found")
            return

        headers: list[tuple[str, str]] = [
            ("etag", entry.etag),
            ("accept-ranges", "bytes"),
        ]
        if entry.last_modified is not None:
            headers.append(
                ("last-modified", formatdate(entry.last_modified, usegmt=True))
            )
        if entry.variants:
            headers.append(("vary", "accept-encoding"))

        request_headers = scope.headers
        if_none_match = request_headers.get("if-none-match")
        if if_none_match is not None:
            if _etag_matches(if_none_match, entry.etag):
                proto.response_empty(304, headers)
                return
        else:
            if_modified_since = request_headers.get("if-modified-since")
            if if_modified_since is not None and _not_modified_since(
                if_modified_since, entry.last_modified
            ):
                proto.response_empty(304, headers)
                return

        headers.append(("content-type", entry.content_type))
        head = scope.method == "HEAD"

        range_header = request_headers.get("range")
        if_range = request_headers.get("if-range")
        if range_header is not None and (if_range is None or if_range == entry.etag):
            byte_range = _parse_range(range_header, entry.size)
            if byte_range is False:
                headers.append(("content-range", f"bytes */{entry.size}"))
                proto.response_empty(416, headers)
                return
            if byte_range is not None:
                start, end = byte_range
                headers.append(("content-range", f"bytes {start}-{end}/{entry.size}"))
                headers.append(("content-length", str(end - start + 1)))
                if head:
                    proto.response_empty(206, headers)
                elif entry.path_str is not None:
                    # granian takes an exclusive end offset
                    proto.response_file_range(
                        206, headers, entry.path_str, start, end + 1
                    )
                else:
                    assert entry.content is not None  # set when path_str is None
                    proto.response_bytes(206, headers, entry.content[start : end + 1])
                return

        encoding = _select_encoding(
            request_headers.get("accept-encoding"),
            self._server_priority,
            entry.variants.keys(),
        )
        if encoding != "identity":
            body = entry.variants[encoding]
            headers.append(("content-encoding", encoding))
            headers.append(("content-length", str(len(body))))
            if head:
                proto.response_empty(200, headers)
            else:
                proto.response_bytes(200, headers, body)
            return

        headers.append(("content-length", str(entry.size)))
        if head:
            proto.response_empty(200, headers)
        elif entry.path_str is not None:
            proto.response_file(200, headers, entry.path_str)
        else:
            assert entry.content is not None  # set when path_str is None
            proto.response_bytes(200, headers, entry.content)
