"""Expose a ServerArtifact as a FastMCP server backed by the dispatch bridge."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import TextContent, ToolAnnotations
from pydantic import PrivateAttr

from .artifact import ServerArtifact, ToolEntry
from .bridge import Dispatcher
from .config import RuntimeConfig
from .errors import DispatchError

logger = logging.getLogger(__name__)

_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


# Keywords that constrain values rather than describe shape
_VALUE_KEYWORDS = frozenset({
    "required", "enum", "const", "pattern", "multipleOf",
    "minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum",
    "minLength", "maxLength", "minItems", "maxItems", "uniqueItems",
    "minProperties", "maxProperties",
})


def _loosen(schema: Any, nested: bool = False) -> Any:
    """Reduce a response schema to the shape it documents.

    Property names, types and descriptions stay; value constraints, `required`
    and closed objects go, and nested values also accept null. A 2xx reply that
    drifts from its declared response still validates.
    """
    if not isinstance(schema, dict):
        return schema
    loose = {key: value for key, value in schema.items() if key not in _VALUE_KEYWORDS}
    if loose.get("additionalProperties") is False:
        del loose["additionalProperties"]
    elif isinstance(loose.get("additionalProperties"), dict):
        loose["additionalProperties"] = _loosen(loose["additionalProperties"], True)
    if isinstance(loose.get("properties"), dict):
        loose["properties"] = {name: _loosen(child, True) for name, child in loose["properties"].items()}
    if isinstance(loose.get("items"), dict):
        loose["items"] = _loosen(loose["items"], True)
    schema_type = loose.get("type")
    if nested and isinstance(schema_type, str) and schema_type != "null":
        loose["type"] = [schema_type, "null"]
    elif nested and isinstance(schema_type, list) and "null" not in schema_type:
        loose["type"] = [*schema_type, "null"]
    return loose


def _advertised_output_schema(entry: ToolEntry, expose: bool) -> dict[str, Any] | None:
    schema = entry.definition.output_schema
    if expose and schema.get("type") == "object":
        return _loosen(schema)
    return None


class BridgeTool(Tool):
    """An MCP tool whose calls are forwarded to the upstream API."""

    _dispatcher: Dispatcher | None = PrivateAttr(default=None)

    @classmethod
    def from_entry(cls, dispatcher: Dispatcher, entry: ToolEntry, expose_output_schema: bool = True) -> BridgeTool:
        definition = entry.definition
        tool = cls(
            name=definition.name,
            description=definition.description,
            parameters=definition.input_schema,
            output_schema=_advertised_output_schema(entry, expose_output_schema),
            annotations=ToolAnnotations(
                title=f"{definition.method} {definition.path}",
                readOnlyHint=definition.method in _SAFE_METHODS,
            ),
        )
        tool._dispatcher = dispatcher
        return tool

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        try:
            result = await self._dispatcher.call(self.name, arguments)
        except DispatchError as exc:
            raise ToolError(json.dumps(exc.to_dict(), default=str)) from exc

        structured = None
        if self.output_schema is not None:
            structured = result.payload if isinstance(result.payload, dict) else {"result": result.payload}
        return ToolResult(
            content=[TextContent(type="text", text=result.to_text())],
            structured_content=structured,
        )


def build_server(
    artifact: ServerArtifact,
    config: RuntimeConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> FastMCP:
    """Create a FastMCP server with one tool per artifact entry."""
    config = config or RuntimeConfig.from_env(artifact)
    dispatcher = Dispatcher(artifact, config, client=client)

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        try:
            yield
        finally:
            await dispatcher.aclose()

    mcp = FastMCP(name=artifact.name, instructions=artifact.description, lifespan=lifespan)
    for entry in artifact.tools:
        mcp.add_tool(BridgeTool.from_entry(dispatcher, entry, config.expose_output_schema))
    logger.info(
        "Serving %d tools for %s %s against %s",
        len(artifact.tools), artifact.title, artifact.version, dispatcher.base_url,
    )
    return mcp


def run_server(
    manifest_path: Path | str,
    config: RuntimeConfig | None = None,
    transport: str = "stdio",
    **transport_kwargs: Any,
) -> None:
    """Load a manifest and serve it until the transport closes."""
    artifact = ServerArtifact.load(manifest_path)
    mcp = build_server(artifact, config)
    mcp.run(transport=transport, **transport_kwargs)
