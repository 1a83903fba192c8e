"""Runtime dispatch bridge: tool call in, HTTP request out, tool result back.

Each invocation walks Received -> Validated -> Bound -> Sent -> Completed,
or drops to Failed at any step. Invocations share nothing but the read-only
artifact, the httpx connection pool and the OAuth2 token cache, so any number
can run concurrently. A failed call is reported to its caller only.

Requests are never retried: the bridge cannot tell whether repeating a POST
is safe.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx
import jsonschema

from .artifact import Destination, ServerArtifact, ToolDefinition, ToolEntry
from .config import RuntimeConfig
from .credentials import CredentialInjector, CredentialTarget
from .errors import (
    CancelledError,
    DispatchError,
    UnknownToolError,
    UpstreamErrorResponse,
    UpstreamUnavailableError,
    ValidationError,
)
from .operation_mapper import is_json_media_type

logger = logging.getLogger(__name__)

_NO_BODY = object()


class InvocationState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    BOUND = "bound"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PreparedRequest:
    method: str
    path: str
    params: list[tuple[str, str]] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    body: Any = _NO_BODY
    media_type: str | None = None

    @property
    def has_body(self) -> bool:
        return self.body is not _NO_BODY


@dataclass
class ToolResult:
    status: int
    media_type: str | None
    payload: Any

    def to_text(self) -> str:
        if self.payload is None:
            return ""
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, indent=2, ensure_ascii=False, default=str)


@dataclass
class Invocation:
    """One tool call and the states it went through."""

    tool: str
    arguments: dict[str, Any]
    state: InvocationState = InvocationState.RECEIVED
    history: list[InvocationState] = field(default_factory=lambda: [InvocationState.RECEIVED])
    request: PreparedRequest | None = None
    result: ToolResult | None = None
    error: BaseException | None = None

    def advance(self, state: InvocationState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: BaseException) -> None:
        self.error = error
        self.advance(InvocationState.FAILED)


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _path_value(name: str, value: Any, style: str | None, explode: bool) -> str:
    def enc(item: Any) -> str:
        return quote(_scalar(item), safe="")

    if isinstance(value, list):
        items = [enc(v) for v in value]
        if style == "label":
            return "." + ("." if explode else ",").join(items)
        if style == "matrix":
            if explode:
                return "".join(f";{name}={item}" for item in items)
            return f";{name}=" + ",".join(items)
        return ",".join(items)
    if isinstance(value, dict):
        pairs = [f"{enc(k)}={enc(v)}" if explode else f"{enc(k)},{enc(v)}" for k, v in value.items()]
        return ",".join(pairs)
    if style == "label":
        return "." + enc(value)
    if style == "matrix":
        return f";{name}={enc(value)}"
    return enc(value)


_DELIMITERS = {"spaceDelimited": " ", "pipeDelimited": "|"}


def _query_pairs(name: str, value: Any, style: str | None, explode: bool) -> list[tuple[str, str]]:
    if isinstance(value, list):
        if style in _DELIMITERS:
            return [(name, _DELIMITERS[style].join(_scalar(v) for v in value))]
        if explode:
            return [(name, _scalar(v)) for v in value]
        return [(name, ",".join(_scalar(v) for v in value))]
    if isinstance(value, dict):
        if style == "deepObject":
            return [(f"{name}[{k}]", _scalar(v)) for k, v in value.items()]
        if explode:
            return [(str(k), _scalar(v)) for k, v in value.items()]
        return [(name, ",".join(f"{k},{_scalar(v)}" for k, v in value.items()))]
    return [(name, _scalar(value))]


def _header_value(value: Any) -> str:
    if isinstance(value, list):
        return ",".join(_scalar(v) for v in value)
    if isinstance(value, dict):
        return ",".join(f"{k},{_scalar(v)}" for k, v in value.items())
    return _scalar(value)


def _decode_body(response: httpx.Response) -> tuple[str | None, Any]:
    media_type = response.headers.get("content-type")
    if not response.content:
        return media_type, None
    base = (media_type or "").split(";", 1)[0].strip().lower()
    if is_json_media_type(base) or not base:
        try:
            return media_type, response.json()
        except ValueError:
            return media_type, response.text
    if base.startswith("text/") or base.endswith(("+xml", "/xml")) or base == "application/x-www-form-urlencoded":
        return media_type, response.text
    return media_type, {
        "media_type": base,
        "base64": base64.b64encode(response.content).decode("ascii"),
    }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class Dispatcher:
    """Execute tool calls against the upstream API described by an artifact."""

    def __init__(
        self,
        artifact: ServerArtifact,
        config: RuntimeConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.artifact = artifact
        self.config = config or RuntimeConfig()
        self.base_url = self.config.effective_base_url(artifact)
        self._entries = {entry.name: entry for entry in artifact.tools}
        self._validators = {
            entry.name: jsonschema.Draft7Validator(entry.definition.input_schema)
            for entry in artifact.tools
        }
        self._client = client
        self._owns_client = client is None
        self.credentials = CredentialInjector(self.config)

    @property
    def tools(self) -> list[ToolDefinition]:
        return [entry.definition for entry in self.artifact.tools]

    @property
    def client(self) -> httpx.AsyncClient:
        # An owned pool is (re)opened on first use, so a closed dispatcher can serve again
        if self._client is None or (self._owns_client and self._client.is_closed):
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                limits=httpx.Limits(max_connections=self.config.max_connections),
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Run one tool call; raise the DispatchError it failed with."""
        invocation = await self.invoke(name, arguments)
        if invocation.error is not None:
            raise invocation.error
        return invocation.result

    async def invoke(self, name: str, arguments: dict[str, Any] | None = None) -> Invocation:
        """Run one tool call and return its full record.

        DispatchErrors are recorded on the invocation; cancellation propagates
        as CancelledError after the invocation is marked failed.
        """
        invocation = Invocation(tool=name, arguments=dict(arguments or {}))
        started = time.monotonic()
        try:
            entry = self._entries.get(name)
            if entry is None:
                raise UnknownToolError(name)

            self._validate(entry, invocation.arguments)
            invocation.advance(InvocationState.VALIDATED)

            invocation.request = self._bind(entry, invocation.arguments)
            invocation.advance(InvocationState.BOUND)

            response = await self._send(entry, invocation.request)
            invocation.advance(InvocationState.SENT)

            invocation.result = self._complete(entry, response)
            invocation.advance(InvocationState.COMPLETED)
        except DispatchError as exc:
            invocation.fail(exc)
            logger.warning("Tool %s failed: %s", name, exc)
        except asyncio.CancelledError as exc:
            cancelled = exc if isinstance(exc, CancelledError) else CancelledError(name)
            invocation.fail(cancelled)
            logger.info("Tool %s cancelled in state %s", name, invocation.history[-2].value)
            raise cancelled from exc
        else:
            logger.info(
                "Tool %s: %s %s -> %d (%.0f ms)",
                name, entry.definition.method, invocation.request.path,
                invocation.result.status, (time.monotonic() - started) * 1000,
            )
        return invocation

    # -- states -------------------------------------------------------------

    def _validate(self, entry: ToolEntry, arguments: dict[str, Any]) -> None:
        validator = self._validators[entry.name]
        problems = []
        for error in sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path)):
            where = "/".join(str(p) for p in error.absolute_path)
            problems.append(f"{where}: {error.message}" if where else error.message)
        if problems:
            raise ValidationError(entry.name, problems)

    def _bind(self, entry: ToolEntry, arguments: dict[str, Any]) -> PreparedRequest:
        plan = entry.binding_plan
        request = PreparedRequest(
            method=entry.definition.method,
            path=entry.definition.path,
            headers=dict(self.artifact.default_headers),
            media_type=plan.body_media_type,
        )
        body_fields: dict[str, Any] = {}

        for rule in plan.rules:
            if rule.field not in arguments:
                continue
            value = arguments[rule.field]
            if rule.destination is Destination.PATH:
                request.path = request.path.replace(
                    "{" + rule.name + "}", _path_value(rule.name, value, rule.style, rule.explode))
            elif value is None:
                # absent and null are the same for query/header/cookie
                if rule.destination is Destination.BODY_FIELD:
                    body_fields[rule.name] = None
                elif rule.destination is Destination.WHOLE_BODY:
                    request.body = None
            elif rule.destination is Destination.QUERY:
                request.params.extend(_query_pairs(rule.name, value, rule.style, rule.explode))
            elif rule.destination is Destination.HEADER:
                request.headers[rule.name] = _header_value(value)
            elif rule.destination is Destination.COOKIE:
                request.cookies[rule.name] = _scalar(value)
            elif rule.destination is Destination.BODY_FIELD:
                body_fields[rule.name] = value
            elif rule.destination is Destination.WHOLE_BODY:
                request.body = value

        if not request.has_body and (body_fields or plan.body_required and plan.for_destination(Destination.BODY_FIELD)):
            request.body = body_fields
        return request

    async def _send(self, entry: ToolEntry, request: PreparedRequest) -> httpx.Response:
        target = CredentialTarget(headers=request.headers, params=request.params, cookies=request.cookies)
        client = self.client
        await self.credentials.apply(entry.name, entry.credentials, target, client)

        kwargs: dict[str, Any] = {}
        if request.has_body:
            kwargs.update(self._encode_body(request))
        if request.cookies:
            request.headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in request.cookies.items())

        url = self.base_url + request.path
        try:
            return await client.request(
                request.method,
                url,
                params=request.params or None,
                headers=request.headers,
                timeout=self.config.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailableError(
                entry.name, f"Timed out after {self.config.timeout:g}s calling {request.method} {url}") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(entry.name, f"Could not reach {url}: {exc}") from exc

    @staticmethod
    def _encode_body(request: PreparedRequest) -> dict[str, Any]:
        media_type = request.media_type or "application/json"
        base = media_type.split(";", 1)[0].strip().lower()
        body = request.body

        if is_json_media_type(base):
            request.headers.setdefault("Content-Type", media_type)
            return {"content": json.dumps(body).encode("utf-8")}
        if base == "application/x-www-form-urlencoded" and isinstance(body, dict):
            return {"data": {k: _scalar(v) for k, v in body.items() if v is not None}}
        if base == "multipart/form-data" and isinstance(body, dict):
            return {"files": {k: (None, _scalar(v)) for k, v in body.items() if v is not None}}

        request.headers.setdefault("Content-Type", media_type)
        if isinstance(body, (bytes, str)):
            return {"content": body}
        return {"content": json.dumps(body).encode("utf-8")}

    def _complete(self, entry: ToolEntry, response: httpx.Response) -> ToolResult:
        media_type, payload = _decode_body(response)
        if not response.is_success:
            raise UpstreamErrorResponse(entry.name, response.status_code, payload)
        return ToolResult(status=response.status_code, media_type=media_type, payload=payload)
