"""OpenAPI 3.x to MCP translation engine and runtime dispatch bridge."""

from __future__ import annotations

__version__ = "0.1.0"

from .artifact import ServerArtifact
from .bridge import Dispatcher
from .builder import BuildOptions, build_artifact, translate
from .codegen import emit
from .config import RuntimeConfig
from .loader import load_document
from .resolver import resolve_document
from .server import build_server

__all__ = [
    "BuildOptions",
    "Dispatcher",
    "RuntimeConfig",
    "ServerArtifact",
    "build_artifact",
    "build_server",
    "emit",
    "load_document",
    "resolve_document",
    "translate",
]
