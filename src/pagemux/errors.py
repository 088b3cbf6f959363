"""Exceptions raised by pagemux."""


class PagemuxError(Exception):
    """Base class for pagemux errors."""


class ConfigurationError(PagemuxError, ValueError):
    """Configuration cannot be turned into a working service.

    Raised only while the service is being built; the server must not start.
    """


class ErrorPageError(PagemuxError):
    """An error page could not be read or rendered."""

    def __init__(self, code: int, name: str, cause: BaseException) -> None:
        self.code = code
        self.name = name
        self.cause = cause
        super().__init__(f"cannot produce error page {name!r} for {code}: {cause}")
