"""Layered key/value configuration.

Values come from (highest priority first) the environment, a YAML document,
and built-in defaults. Keys are dotted paths into the document and are
matched case-insensitively segment by segment; the keys of returned mappings
keep the case they were written with.

A scalar key `a.b.c` can be overridden with the environment variable `A_B_C`.
A few keys have shorter aliases, see `ENV_ALIASES`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from pagemux.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "http.content.useEmbedded": True,
    "http.content.templatesDirectory": "templates",
    "http.content.staticDirectory": "static",
    "http.address": "0.0.0.0",  # noqa: S104
    "http.port": 8888,
    "http.context": "/",
    "http.password.file": "/etc/pagemux/.passwd",
    "http.debug": False,
    "google.analytics.id": "",
}

ENV_ALIASES: dict[str, str] = {
    "http.content.useembedded": "HTTP_USE_EMBEDDED",
    "http.password.file": "HTTP_PASSWORD_FILE",
    "google.analytics.id": "GOOGLE_ANALYTICS_ID",
}

_TRUE = frozenset({"1", "t", "true", "y", "yes", "on"})
_FALSE = frozenset({"0", "f", "false", "n", "no", "off", ""})

_MISSING = object()


def _env_name(key: str) -> str:
    return key.replace(".", "_").upper()


def _lookup(document: Mapping[str, Any], key: str) -> Any:
    current: Any = document
    for segment in key.split("."):
        if not isinstance(current, Mapping):
            return _MISSING
        wanted = segment.lower()
        for name, value in current.items():
            if str(name).lower() == wanted:
                current = value
                break
        else:
            return _MISSING
    return current


class Config:
    """Read-only configuration with typed lookups."""

    __slots__ = ("_defaults", "_document", "_environ")

    def __init__(
        self,
        document: Mapping[str, Any] | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self._document: Mapping[str, Any] = document or {}
        self._environ: Mapping[str, str] = (
            os.environ if environ is None else environ
        )
        merged = DEFAULTS if defaults is None else {**DEFAULTS, **defaults}
        self._defaults = {key.lower(): value for key, value in merged.items()}

    @classmethod
    def load(
        cls, path: Path | str | None, *, environ: Mapping[str, str] | None = None
    ) -> Config:
        """Load a YAML configuration file. `None` gives defaults plus environment."""
        if path is None:
            return cls(environ=environ)
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            msg = f"cannot read configuration file {path}: {e}"
            raise ConfigurationError(msg) from e
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            msg = f"cannot parse configuration file {path}: {e}"
            raise ConfigurationError(msg) from e
        if document is None:
            document = {}
        if not isinstance(document, Mapping):
            msg = f"configuration file {path} must contain a mapping"
            raise ConfigurationError(msg)
        logger.info("loaded configuration from %s", path)
        return cls(document, environ=environ)

    def _from_environ(self, key: str) -> str | None:
        lowered = key.lower()
        alias = ENV_ALIASES.get(lowered)
        if alias is not None and alias in self._environ:
            return self._environ[alias]
        return self._environ.get(_env_name(key))

    def get(self, key: str, default: Any = None) -> Any:
        """Return the raw value for key, or default when it is not set anywhere."""
        value = self._from_environ(key)
        if value is not None:
            return value
        value = _lookup(self._document, key)
        if value is not _MISSING:
            return value
        return self._defaults.get(key.lower(), default)

    def is_set(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get_bool(self, key: str) -> bool:
        value = self.get(key, False)
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
        msg = f"configuration key {key} must be a boolean, got {value!r}"
        raise ConfigurationError(msg)

    def get_int(self, key: str) -> int:
        value = self.get(key, 0)
        if isinstance(value, bool):
            msg = f"configuration key {key} must be an integer, got {value!r}"
            raise ConfigurationError(msg)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            msg = f"configuration key {key} must be an integer, got {value!r}"
            raise ConfigurationError(msg) from e

    def get_str(self, key: str) -> str:
        value = self.get(key, "")
        if value is None:
            return ""
        if isinstance(value, Mapping | list):
            msg = f"configuration key {key} must be a scalar, got {value!r}"
            raise ConfigurationError(msg)
        return str(value)

    def get_str_list(self, key: str) -> list[str]:
        """Return a list of strings; a string value is split on commas and whitespace."""
        value = self.get(key, [])
        if value is None:
            return []
        if isinstance(value, str):
            return [part for part in value.replace(",", " ").split() if part]
        if isinstance(value, list | tuple):
            return [str(item) for item in value]
        msg = f"configuration key {key} must be a list, got {value!r}"
        raise ConfigurationError(msg)

    def get_map(self, key: str) -> dict[str, Any]:
        value = self.get(key, {})
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            msg = f"configuration key {key} must be a mapping, got {value!r}"
            raise ConfigurationError(msg)
        return {str(name): item for name, item in value.items()}

    def get_str_map(self, key: str) -> dict[str, str]:
        return {
            name: "" if item is None else str(item)
            for name, item in self.get_map(key).items()
        }
