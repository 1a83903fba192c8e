"""Exception hierarchy.

Translation-time errors are fatal to producing an artifact and always name
the offending document location. Runtime errors are per-invocation and are
turned into MCP tool errors by the server; they never take the process down.
"""

from __future__ import annotations

import asyncio
from typing import Any


class OpenApiMcpError(Exception):
    """Base class for every error raised by openapi_mcp."""


# ---------------------------------------------------------------------------
# Translation time
# ---------------------------------------------------------------------------

class TranslationError(OpenApiMcpError):
    """An error that prevents an artifact from being produced."""

    def __init__(self, message: str, location: str | None = None) -> None:
        self.message = message
        self.location = location
        super().__init__(f"{message} (at {location})" if location else message)


class ParseError(TranslationError):
    """The input document is not well-formed JSON/YAML or not an OpenAPI 3.x object."""


class UnresolvedReferenceError(TranslationError):
    """A local `$ref` points at nothing."""

    def __init__(self, pointer: str, site: str) -> None:
        self.pointer = pointer
        super().__init__(f"Unresolved reference {pointer!r}", site)


class UnsupportedReferenceError(TranslationError):
    """A `$ref` points outside the current document."""

    def __init__(self, pointer: str, site: str) -> None:
        self.pointer = pointer
        super().__init__(
            f"External reference {pointer!r} is not supported; bundle the document first",
            site,
        )


class InvalidSchemaError(TranslationError):
    """A schema node is structurally malformed (or violates the allOf error policy)."""


class EmissionError(TranslationError):
    """The artifact cannot be written (duplicate tool names)."""


class OutputExistsError(TranslationError):
    """The output directory already exists and overwriting was not requested."""

    def __init__(self, path: Any) -> None:
        self.path = path
        super().__init__("Output directory already exists", str(path))


# ---------------------------------------------------------------------------
# Serve time
# ---------------------------------------------------------------------------

class ConfigurationError(OpenApiMcpError):
    """Serve-time configuration is unusable."""


class DispatchError(OpenApiMcpError):
    """A single tool invocation failed."""

    kind = "dispatch_error"

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        self.message = message
        super().__init__(f"{tool}: {message}")

    def to_dict(self) -> dict[str, Any]:
        """Structured payload returned to the MCP caller."""
        return {"error": self.kind, "tool": self.tool, "message": self.message}


class UnknownToolError(DispatchError):
    kind = "unknown_tool"

    def __init__(self, tool: str) -> None:
        super().__init__(tool, f"No tool named {tool!r}")


class ValidationError(DispatchError):
    """Arguments do not satisfy the tool's input schema. No request was sent."""

    kind = "validation_error"

    def __init__(self, tool: str, problems: list[str]) -> None:
        self.problems = problems
        super().__init__(tool, "Invalid arguments: " + "; ".join(problems))

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["problems"] = list(self.problems)
        return payload


class UpstreamUnavailableError(DispatchError):
    """Timeout or transport failure talking to the upstream API."""

    kind = "upstream_unavailable"


class UpstreamErrorResponse(DispatchError):
    """The upstream API answered with a non-2xx status."""

    kind = "upstream_error"

    def __init__(self, tool: str, status: int, body: Any) -> None:
        self.status = status
        self.body = body
        super().__init__(tool, f"Upstream responded with HTTP {status}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["status"] = self.status
        payload["body"] = self.body
        return payload


class CancelledError(asyncio.CancelledError):
    """The MCP host cancelled an in-flight tool call."""

    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(f"{tool}: cancelled")
