"""Canonical in-memory model of an OpenAPI 3.x document.

Schema nodes form a closed set of variants (Primitive, ArrayNode, ObjectNode,
Composite, FreeForm, Reference, BackReference); consumers dispatch on the
concrete class. `SchemaNode` is the union of all of them.

Component schemas live in `ComponentsRegistry.schemas` keyed by name, and the
resolver addresses every schema it follows by its JSON pointer, so cycle
detection is an identity check on pointer strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Union

from .artifact import SecuritySchemeKind

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")

COMPONENTS_SCHEMAS_PREFIX = "#/components/schemas/"


class ParameterLocation(str, Enum):
    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    COOKIE = "cookie"


# Default serialization per location (OpenAPI 3.x "style" defaults)
DEFAULT_STYLES: dict[ParameterLocation, str] = {
    ParameterLocation.PATH: "simple",
    ParameterLocation.QUERY: "form",
    ParameterLocation.HEADER: "simple",
    ParameterLocation.COOKIE: "form",
}


# ---------------------------------------------------------------------------
# Schema nodes
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class SchemaMeta:
    """Annotations shared by every schema variant."""

    location: str = ""
    name: str | None = None  # component name, when the node is a named component
    title: str | None = None
    description: str | None = None
    default: Any = None
    has_default: bool = False
    nullable: bool = False
    read_only: bool = False
    write_only: bool = False
    deprecated: bool = False


@dataclass(eq=False)
class Primitive:
    type: str | None  # string | number | integer | boolean | null; None for enum-only schemas
    format: str | None = None
    enum: list[Any] | None = None
    constraints: dict[str, Any] = field(default_factory=dict)
    meta: SchemaMeta = field(default_factory=SchemaMeta)


@dataclass(eq=False)
class ArrayNode:
    items: SchemaNode | None
    constraints: dict[str, Any] = field(default_factory=dict)
    meta: SchemaMeta = field(default_factory=SchemaMeta)
    malformed: str | None = None


@dataclass(eq=False)
class ObjectNode:
    properties: dict[str, SchemaNode] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)
    # None: unspecified, bool: allowed/forbidden, node: schema for extra values
    additional: bool | SchemaNode | None = None
    constraints: dict[str, Any] = field(default_factory=dict)
    meta: SchemaMeta = field(default_factory=SchemaMeta)
    malformed: str | None = None


@dataclass(eq=False)
class Composite:
    combinator: str  # allOf | oneOf | anyOf
    members: list[SchemaNode] = field(default_factory=list)
    meta: SchemaMeta = field(default_factory=SchemaMeta)
    malformed: str | None = None


@dataclass(eq=False)
class FreeForm:
    meta: SchemaMeta = field(default_factory=SchemaMeta)


@dataclass(eq=False)
class Reference:
    """An unresolved `$ref`. None may survive resolution."""

    pointer: str
    meta: SchemaMeta = field(default_factory=SchemaMeta)


@dataclass(eq=False)
class BackReference:
    """Marks the point where following `pointer` again would loop."""

    pointer: str
    name: str
    meta: SchemaMeta = field(default_factory=SchemaMeta)


SchemaNode = Union[Primitive, ArrayNode, ObjectNode, Composite, FreeForm, Reference, BackReference]


def pointer_name(pointer: str) -> str:
    """Last token of a JSON pointer, unescaped: '#/components/schemas/Pet' -> 'Pet'."""
    token = pointer.rstrip("/").rsplit("/", 1)[-1]
    return token.replace("~1", "/").replace("~0", "~")


# ---------------------------------------------------------------------------
# Document structure
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Ref:
    """Unresolved `$ref` standing in for a parameter, request body or response."""

    pointer: str
    site: str


@dataclass(eq=False)
class Parameter:
    name: str
    location: ParameterLocation
    required: bool
    schema: SchemaNode
    style: str | None = None
    explode: bool | None = None
    description: str | None = None
    deprecated: bool = False

    @property
    def effective_style(self) -> str:
        return self.style or DEFAULT_STYLES[self.location]

    @property
    def effective_explode(self) -> bool:
        if self.explode is not None:
            return self.explode
        return self.effective_style == "form"


@dataclass(eq=False)
class RequestBody:
    content: dict[str, SchemaNode | None]
    required: bool = False
    description: str | None = None


@dataclass(eq=False)
class ResponseSpec:
    status: str
    description: str | None = None
    content: dict[str, SchemaNode | None] = field(default_factory=dict)


@dataclass(eq=False)
class Operation:
    path: str
    method: str
    location: str
    operation_id: str | None = None
    summary: str | None = None
    description: str | None = None
    parameters: list[Parameter | Ref] = field(default_factory=list)
    request_body: RequestBody | Ref | None = None
    responses: dict[str, ResponseSpec | Ref] = field(default_factory=dict)
    # None means "inherit the document-level requirement"
    security: list[dict[str, list[str]]] | None = None
    deprecated: bool = False
    tags: list[str] = field(default_factory=list)


@dataclass(eq=False)
class PathItem:
    path: str
    operations: dict[str, Operation] = field(default_factory=dict)
    parameters: list[Parameter | Ref] = field(default_factory=list)
    # `$ref` to another path item; merged in by the resolver
    ref: Ref | None = None


@dataclass(eq=False)
class SecurityScheme:
    name: str
    kind: SecuritySchemeKind
    location: str | None = None  # header | query | cookie (apiKey)
    parameter_name: str | None = None
    token_url: str | None = None
    scopes: list[str] = field(default_factory=list)
    reason: str | None = None  # why the scheme is unsupported

    @property
    def supported(self) -> bool:
        return self.kind is not SecuritySchemeKind.UNSUPPORTED


@dataclass(eq=False)
class ComponentsRegistry:
    schemas: dict[str, SchemaNode] = field(default_factory=dict)
    parameters: dict[str, Parameter | Ref] = field(default_factory=dict)
    request_bodies: dict[str, RequestBody | Ref] = field(default_factory=dict)
    responses: dict[str, ResponseSpec | Ref] = field(default_factory=dict)
    security_schemes: dict[str, SecurityScheme | Ref] = field(default_factory=dict)


@dataclass(eq=False)
class OpenApiDocument:
    openapi: str
    title: str
    version: str
    description: str | None = None
    servers: list[str] = field(default_factory=list)
    paths: dict[str, PathItem] = field(default_factory=dict)
    components: ComponentsRegistry = field(default_factory=ComponentsRegistry)
    security: list[dict[str, list[str]]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    resolved: bool = False

    def iter_operations(self) -> Iterator[tuple[PathItem, Operation]]:
        """Yield (path item, operation) pairs in document order."""
        for path_item in self.paths.values():
            for operation in path_item.operations.values():
                yield path_item, operation


@dataclass(frozen=True)
class TranslationWarning:
    """A degradation that does not stop translation but must reach the operator."""

    kind: str  # allof-conflict | union-flattened | manual-credentials | ...
    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} (at {self.location})" if self.location else self.message
