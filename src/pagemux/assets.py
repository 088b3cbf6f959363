"""Hierarchical asset stores for templates and static content.

Two stores are provided: `DirectoryAssets` reads from the local filesystem and
`PackageAssets` reads files shipped inside an importable package, which is how
a site bundles its templates and static files with its code.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import TYPE_CHECKING

import jinja2

from pagemux.errors import ConfigurationError

if TYPE_CHECKING:
    from pagemux.config import Config

logger = logging.getLogger(__name__)


def split_path(path: str) -> tuple[str, ...] | None:
    """Split a relative asset path into segments, or None if it is unsafe.

    Leading slashes, `..`, `.` and empty inner segments are rejected so a path
    can never leave its root.
    """
    if path.startswith("/") or "\\" in path:
        return None
    parts = path.split("/")
    if parts and parts[-1] == "":
        parts = parts[:-1]
    if any(part in ("", ".", "..") for part in parts):
        return None
    return tuple(parts)


class AssetRoot(ABC):
    """A read-only tree of files addressed by relative `/`-separated paths.

    `live` roots may change while the server runs, so their files must not be
    cached without checking them again.
    """

    __slots__ = ()

    live: bool = False

    @abstractmethod
    def exists(self, path: str) -> bool:
        """True if path names a regular file."""

    @abstractmethod
    def is_dir(self, path: str) -> bool: ...

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        """Read a file. Raises FileNotFoundError when path does not name a file."""

    @abstractmethod
    def walk(self) -> Iterator[str]:
        """Yield the relative path of every file in the tree."""

    @abstractmethod
    def file_path(self, path: str) -> str | None:
        """A filesystem path for the file, when it exists on disk."""

    @abstractmethod
    def modified(self, path: str) -> float | None:
        """Modification time as a POSIX timestamp, when known."""

    @abstractmethod
    def template_loader(self) -> jinja2.BaseLoader: ...


class DirectoryAssets(AssetRoot):
    __slots__ = ("root",)

    live = True

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"DirectoryAssets({str(self.root)!r})"

    def _resolve(self, path: str) -> Path | None:
        parts = split_path(path)
        if parts is None:
            return None
        return self.root.joinpath(*parts)

    def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return target is not None and target.is_file()

    def is_dir(self, path: str) -> bool:
        target = self._resolve(path)
        return target is not None and target.is_dir()

    def read_bytes(self, path: str) -> bytes:
        target = self._resolve(path)
        if target is None or not target.is_file():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def walk(self) -> Iterator[str]:
        if not self.root.is_dir():
            return
        for file in sorted(self.root.rglob("*")):
            if file.is_file():
                yield file.relative_to(self.root).as_posix()

    def file_path(self, path: str) -> str | None:
        target = self._resolve(path)
        if target is None or not target.is_file():
            return None
        return str(target)

    def modified(self, path: str) -> float | None:
        target = self._resolve(path)
        if target is None:
            return None
        try:
            return target.stat().st_mtime
        except OSError:
            return None

    def template_loader(self) -> jinja2.BaseLoader:
        return jinja2.FileSystemLoader(self.root)


class PackageAssets(AssetRoot):
    """Files bundled inside an importable package, below `subdirectory`."""

    __slots__ = ("package", "subdirectory")

    def __init__(self, package: str, subdirectory: str = "") -> None:
        self.package = package
        self.subdirectory = subdirectory.strip("/")

    def __repr__(self) -> str:
        return f"PackageAssets({self.package!r}, {self.subdirectory!r})"

    def _base(self) -> Traversable:
        base = resources.files(self.package)
        if self.subdirectory:
            base = base.joinpath(*self.subdirectory.split("/"))
        return base

    def _resolve(self, path: str) -> Traversable | None:
        parts = split_path(path)
        if parts is None:
            return None
        if not parts:
            return self._base()
        return self._base().joinpath(*parts)

    def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return target is not None and target.is_file()

    def is_dir(self, path: str) -> bool:
        target = self._resolve(path)
        return target is not None and target.is_dir()

    def read_bytes(self, path: str) -> bytes:
        target = self._resolve(path)
        if target is None or not target.is_file():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def walk(self) -> Iterator[str]:
        base = self._base()
        if not base.is_dir():
            return
        stack: list[tuple[str, Traversable]] = [("", base)]
        while stack:
            prefix, directory = stack.pop()
            for child in sorted(directory.iterdir(), key=lambda c: c.name):
                if child.name == "__pycache__":
                    continue
                relative = f"{prefix}{child.name}"
                if child.is_dir():
                    stack.append((relative + "/", child))
                elif child.is_file():
                    yield relative

    def file_path(self, path: str) -> str | None:
        target = self._resolve(path)
        if isinstance(target, Path) and target.is_file():
            return str(target)
        return None

    def modified(self, path: str) -> float | None:
        target = self._resolve(path)
        if isinstance(target, Path):
            try:
                return target.stat().st_mtime
            except OSError:
                return None
        return None

    def template_loader(self) -> jinja2.BaseLoader:
        try:
            return jinja2.PackageLoader(self.package, self.subdirectory or ".")
        except (ImportError, ValueError) as e:
            msg = f"cannot load templates from {self!r}: {e}"
            raise ConfigurationError(msg) from e


DEFAULT_ERROR_PAGES = PackageAssets("pagemux", "defaults")


def resolve_asset_roots(
    config: Config, package: str | None
) -> tuple[AssetRoot, AssetRoot]:
    """Return the (templates, static) roots selected by configuration."""
    templates_directory = config.get_str("http.content.templatesDirectory")
    static_directory = config.get_str("http.content.staticDirectory")
    if config.get_bool("http.content.useEmbedded"):
        if not package:
            msg = "http.content.useEmbedded requires the name of the package bundling the content"
            raise ConfigurationError(msg)
        logger.info(
            "using embedded templates and content from package %s",
            package,
            extra={"component": "service"},
        )
        return (
            PackageAssets(package, templates_directory),
            PackageAssets(package, static_directory),
        )
    logger.info(
        "using templates and content from the file system",
        extra={"component": "service"},
    )
    return DirectoryAssets(templates_directory), DirectoryAssets(static_directory)
