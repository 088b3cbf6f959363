from importlib.metadata import version

from .config import Config
from .controllers import ModelController, Page
from .errors import ConfigurationError, ErrorPageError, PagemuxError
from .server import create_app, serve
from .service import Service, create_service
from .types import Controller, ProcessingError, Reply, Request

__all__ = [
    "Config",
    "ConfigurationError",
    "Controller",
    "ErrorPageError",
    "ModelController",
    "Page",
    "PagemuxError",
    "ProcessingError",
    "Reply",
    "Request",
    "Service",
    "__version__",
    "create_app",
    "create_service",
    "serve",
]

__version__ = version("pagemux")
