"""HTTP basic authentication against a password file.

The password file holds one `username:hash` pair per line, where hash is an
Argon2 PHC string as produced by `hash_password` (or `pagemux hash-password`).
Blank lines and lines starting with `#` are ignored, as are lines that are not
exactly two `:`-separated fields.
"""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pagemux.rsgi import HTTPProtocol, HTTPScope, Middleware, RSGIHTTPHandler

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()

_UNAUTHORIZED_HEADERS = [("www-authenticate", "Basic realm=Restricted")]


def hash_password(secret: str) -> str:
    return _hasher.hash(secret)


def verify_password(hashed: str, secret: str) -> bool:
    try:
        return _hasher.verify(hashed, secret)
    except (VerificationError, InvalidHashError) as e:
        logger.error(
            "cannot verify password hash: %s", e, extra={"component": "authenticator"}
        )
        return False


def parse_credentials(text: str) -> dict[str, str]:
    credentials: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) == 2:
            credentials[parts[0].strip()] = parts[1].strip()
    return credentials


def load_credentials(path: Path | str) -> Mapping[str, str]:
    """Read a password file; an unreadable file yields no credentials."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.error(
            "cannot open password file %s: %s",
            path,
            e,
            extra={"component": "authenticator"},
        )
        return MappingProxyType({})
    return MappingProxyType(parse_credentials(text))


def parse_authorization(header: str | None) -> tuple[str, str] | None:
    """Extract (user, password) from a Basic Authorization header."""
    if header is None:
        return None
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, sep, password = decoded.partition(":")
    if not sep:
        return None
    return user, password


def basic_auth(
    password_file: Path | str | None = None,
    *,
    credentials: Mapping[str, str] | None = None,
) -> Middleware:
    """Create a middleware that only lets through requests with valid credentials.

    Credentials are read from password_file when the middleware is created, or
    taken as given.
    """
    if credentials is None:
        credentials = (
            load_credentials(password_file)
            if password_file
            else MappingProxyType({})
        )

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def authenticated_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            parsed = parse_authorization(scope.headers.get("authorization"))
            if parsed is None:
                proto.response_empty(401, _UNAUTHORIZED_HEADERS)
                return
            user, password = parsed
            if not user.strip() or not password.strip():
                proto.response_empty(401, _UNAUTHORIZED_HEADERS)
                return
            hashed = credentials.get(user)
            if not hashed or not verify_password(hashed, password):
                proto.response_empty(401, _UNAUTHORIZED_HEADERS)
                return
            await handler(scope, proto)

        return authenticated_handler

    return middleware
