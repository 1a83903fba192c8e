"""Load and parse OpenAPI documents.

Turns a byte stream (JSON or YAML, declared or sniffed) into an
OpenApiDocument. References are left in place as Reference/Ref nodes; only
structural well-formedness is checked here; semantic checks happen in the
stage that needs the field.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import yaml

from .artifact import SecuritySchemeKind
from .errors import ParseError
from .model import (
    COMPONENTS_SCHEMAS_PREFIX,
    HTTP_METHODS,
    ArrayNode,
    ComponentsRegistry,
    Composite,
    FreeForm,
    ObjectNode,
    OpenApiDocument,
    Operation,
    Parameter,
    ParameterLocation,
    PathItem,
    Primitive,
    Ref,
    Reference,
    RequestBody,
    ResponseSpec,
    SchemaMeta,
    SchemaNode,
    SecurityScheme,
)

_PRIMITIVE_TYPES = {"string", "number", "integer", "boolean", "null"}

_CONSTRAINT_KEYS = {
    "primitive": (
        "minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf",
        "minLength", "maxLength", "pattern",
    ),
    "array": ("minItems", "maxItems", "uniqueItems"),
    "object": ("minProperties", "maxProperties"),
}

_COMBINATORS = ("allOf", "oneOf", "anyOf")


class _SafeLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as strings so documents stay JSON-serializable."""


_SafeLoader.yaml_implicit_resolvers = {
    key: [r for r in resolvers if r[0] != "tag:yaml.org,2002:timestamp"]
    for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


# ---------------------------------------------------------------------------
# Raw parsing
# ---------------------------------------------------------------------------

def sniff_format(raw: bytes | str) -> str:
    """Guess 'json' or 'yaml' from the first significant character."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    stripped = text.lstrip("\ufeff \t\r\n")
    return "json" if stripped.startswith(("{", "[")) else "yaml"


def parse_raw(raw: bytes | str, fmt: str | None = None) -> dict[str, Any]:
    """Parse bytes into a plain mapping, raising ParseError with a location."""
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ParseError(f"Document is not valid UTF-8: {exc.reason}", f"byte {exc.start}") from exc
    else:
        text = raw

    fmt = (fmt or sniff_format(text)).lower()
    if fmt == "json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON: {exc.msg}", f"line {exc.lineno}, column {exc.colno}") from exc
    elif fmt in ("yaml", "yml"):
        try:
            data = yaml.load(text, Loader=_SafeLoader)
        except yaml.MarkedYAMLError as exc:
            mark = exc.problem_mark or exc.context_mark
            location = f"line {mark.line + 1}, column {mark.column + 1}" if mark else None
            raise ParseError(f"Invalid YAML: {exc.problem or exc}", location) from exc
        except yaml.YAMLError as exc:
            raise ParseError(f"Invalid YAML: {exc}") from exc
    else:
        raise ParseError(f"Unknown document format {fmt!r}; expected 'json' or 'yaml'")

    if not isinstance(data, dict):
        raise ParseError("Document root must be a mapping", "#")
    return data


def load_document(raw: bytes | str, fmt: str | None = None) -> OpenApiDocument:
    """Parse raw bytes into an unresolved OpenApiDocument."""
    return build_document(parse_raw(raw, fmt))


def load_spec(path: Path | str, fmt: str | None = None) -> OpenApiDocument:
    """Load an OpenAPI document from disk, taking the format from the suffix when not given."""
    path = Path(path)
    if fmt is None and path.suffix.lower() in (".json", ".yaml", ".yml"):
        fmt = path.suffix.lower().lstrip(".")
    return load_document(path.read_bytes(), fmt)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _escape(token: str) -> str:
    return str(token).replace("~", "~0").replace("/", "~1")


def child_pointer(base: str, *tokens: Any) -> str:
    """Append JSON-pointer tokens to `base`, escaping '~' and '/'."""
    return "/".join([base, *(_escape(t) for t in tokens)])


def _expect_mapping(value: Any, location: str, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{what} must be a mapping", location)
    return value


def _expect_list(value: Any, location: str, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ParseError(f"{what} must be a list", location)
    return value


def _text(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _substitute_server_variables(server: dict[str, Any]) -> str:
    url = str(server.get("url", ""))
    variables = server.get("variables") or {}
    if isinstance(variables, dict):
        for var_name, var in variables.items():
            if isinstance(var, dict) and "default" in var:
                url = url.replace("{" + str(var_name) + "}", str(var["default"]))
    return url


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

def _build_meta(raw: dict[str, Any], location: str, name: str | None) -> SchemaMeta:
    return SchemaMeta(
        location=location,
        name=name,
        title=_text(raw.get("title")),
        description=_text(raw.get("description")),
        default=raw.get("default"),
        has_default="default" in raw,
        nullable=bool(raw.get("nullable", False)),
        read_only=bool(raw.get("readOnly", False)),
        write_only=bool(raw.get("writeOnly", False)),
        deprecated=bool(raw.get("deprecated", False)),
    )


def _constraints(raw: dict[str, Any], kind: str) -> dict[str, Any]:
    return {key: raw[key] for key in _CONSTRAINT_KEYS[kind] if key in raw}


def build_schema(raw: Any, location: str, name: str | None = None) -> SchemaNode:
    """Build a schema node from its raw mapping.

    Structurally malformed object/array/composite nodes are recorded with a
    `malformed` reason rather than rejected; the translator decides.
    """
    if isinstance(raw, bool):
        # OpenAPI 3.1 boolean schemas
        return FreeForm(meta=SchemaMeta(location=location, name=name))
    if not isinstance(raw, dict):
        raise ParseError("Schema must be a mapping", location)

    meta = _build_meta(raw, location, name)

    if "$ref" in raw:
        return Reference(pointer=str(raw["$ref"]), meta=meta)

    for combinator in _COMBINATORS:
        if combinator in raw:
            return _build_composite(raw, combinator, meta, location)

    schema_type = raw.get("type")
    if isinstance(schema_type, list):
        # OpenAPI 3.1: type: [string, "null"]
        non_null = [t for t in schema_type if t != "null"]
        if "null" in schema_type:
            meta.nullable = True
        schema_type = non_null[0] if len(non_null) == 1 else None
        if len(non_null) > 1:
            return FreeForm(meta=meta)

    if schema_type == "array" or (schema_type is None and "items" in raw):
        items_raw = raw.get("items")
        if items_raw is None:
            return ArrayNode(items=None, constraints=_constraints(raw, "array"), meta=meta,
                             malformed="array schema has no 'items'")
        if not isinstance(items_raw, (dict, bool)):
            return ArrayNode(items=None, constraints=_constraints(raw, "array"), meta=meta,
                             malformed="'items' must be a schema")
        items = build_schema(items_raw, child_pointer(location, "items"))
        return ArrayNode(items=items, constraints=_constraints(raw, "array"), meta=meta)

    if schema_type == "object" or (schema_type is None and ("properties" in raw or "additionalProperties" in raw)):
        return _build_object(raw, meta, location)

    if schema_type in _PRIMITIVE_TYPES:
        return Primitive(
            type=schema_type,
            format=_text(raw.get("format")),
            enum=list(raw["enum"]) if isinstance(raw.get("enum"), list) else None,
            constraints=_constraints(raw, "primitive"),
            meta=meta,
        )

    if isinstance(raw.get("enum"), list):
        return Primitive(type=None, enum=list(raw["enum"]), meta=meta)

    return FreeForm(meta=meta)


def _build_object(raw: dict[str, Any], meta: SchemaMeta, location: str) -> ObjectNode:
    node = ObjectNode(constraints=_constraints(raw, "object"), meta=meta)
    properties = raw.get("properties", {})
    if not isinstance(properties, dict):
        node.malformed = "'properties' must be a mapping"
        return node
    required = raw.get("required", [])
    if not isinstance(required, list):
        node.malformed = "'required' must be a list of property names"
        return node

    props_location = child_pointer(location, "properties")
    for prop_name, prop_raw in properties.items():
        node.properties[str(prop_name)] = build_schema(prop_raw, child_pointer(props_location, prop_name))
    node.required = [str(r) for r in required]

    additional = raw.get("additionalProperties")
    if isinstance(additional, bool):
        node.additional = additional
    elif isinstance(additional, dict):
        node.additional = build_schema(additional, child_pointer(location, "additionalProperties"))
    return node


def _build_composite(raw: dict[str, Any], combinator: str, meta: SchemaMeta, location: str) -> Composite:
    members_raw = raw[combinator]
    node = Composite(combinator=combinator, meta=meta)
    if not isinstance(members_raw, list):
        node.malformed = f"'{combinator}' must be a list of schemas"
        return node

    members_location = child_pointer(location, combinator)
    node.members = [
        build_schema(member, child_pointer(members_location, index))
        for index, member in enumerate(members_raw)
    ]

    # Sibling properties next to allOf act as one more member, merged last
    if combinator == "allOf" and ("properties" in raw or raw.get("type") == "object"):
        siblings = {k: v for k, v in raw.items() if k not in _COMBINATORS}
        node.members.append(_build_object(siblings, SchemaMeta(location=location), location))
    return node


# ---------------------------------------------------------------------------
# Parameters, bodies, responses
# ---------------------------------------------------------------------------

def _ref_or_none(raw: dict[str, Any], location: str) -> Ref | None:
    if "$ref" in raw:
        return Ref(pointer=str(raw["$ref"]), site=location)
    return None


def _build_content(raw: Any, location: str) -> dict[str, SchemaNode | None]:
    content: dict[str, SchemaNode | None] = {}
    for media_type, media in _expect_mapping(raw, location, "'content'").items():
        media_location = child_pointer(location, media_type)
        media = _expect_mapping(media, media_location, "Media type object")
        schema = media.get("schema")
        content[str(media_type)] = (
            build_schema(schema, child_pointer(media_location, "schema")) if schema is not None else None
        )
    return content


def build_parameter(raw: Any, location: str) -> Parameter | Ref:
    raw = _expect_mapping(raw, location, "Parameter")
    ref = _ref_or_none(raw, location)
    if ref:
        return ref
    if "name" not in raw or "in" not in raw:
        raise ParseError("Parameter requires 'name' and 'in'", location)
    try:
        param_location = ParameterLocation(raw["in"])
    except ValueError as exc:
        raise ParseError(f"Unknown parameter location {raw['in']!r}", child_pointer(location, "in")) from exc

    if "schema" in raw:
        schema = build_schema(raw["schema"], child_pointer(location, "schema"))
    elif "content" in raw:
        content = _build_content(raw["content"], child_pointer(location, "content"))
        first = next(iter(content.values()), None)
        schema = first or FreeForm(meta=SchemaMeta(location=location))
    else:
        schema = FreeForm(meta=SchemaMeta(location=location))

    return Parameter(
        name=str(raw["name"]),
        location=param_location,
        # path parameters are always required
        required=param_location is ParameterLocation.PATH or bool(raw.get("required", False)),
        schema=schema,
        style=_text(raw.get("style")),
        explode=raw["explode"] if isinstance(raw.get("explode"), bool) else None,
        description=_text(raw.get("description")),
        deprecated=bool(raw.get("deprecated", False)),
    )


def build_request_body(raw: Any, location: str) -> RequestBody | Ref:
    raw = _expect_mapping(raw, location, "Request body")
    ref = _ref_or_none(raw, location)
    if ref:
        return ref
    return RequestBody(
        content=_build_content(raw.get("content"), child_pointer(location, "content")),
        required=bool(raw.get("required", False)),
        description=_text(raw.get("description")),
    )


def build_response(status: str, raw: Any, location: str) -> ResponseSpec | Ref:
    raw = _expect_mapping(raw, location, "Response")
    ref = _ref_or_none(raw, location)
    if ref:
        return ref
    return ResponseSpec(
        status=status,
        description=_text(raw.get("description")),
        content=_build_content(raw.get("content"), child_pointer(location, "content")),
    )


def _build_security(raw: Any, location: str) -> list[dict[str, list[str]]]:
    requirements = []
    for index, alternative in enumerate(_expect_list(raw, location, "'security'")):
        alternative = _expect_mapping(alternative, child_pointer(location, index), "Security requirement")
        requirements.append({
            str(name): [str(s) for s in (scopes or [])]
            for name, scopes in alternative.items()
        })
    return requirements


def build_security_scheme(name: str, raw: Any, location: str) -> SecurityScheme | Ref:
    raw = _expect_mapping(raw, location, "Security scheme")
    ref = _ref_or_none(raw, location)
    if ref:
        return ref
    scheme_type = raw.get("type")

    if scheme_type == "apiKey":
        where = raw.get("in")
        if where in ("header", "query", "cookie") and raw.get("name"):
            return SecurityScheme(name, SecuritySchemeKind.API_KEY, location=where,
                                  parameter_name=str(raw["name"]))
        return SecurityScheme(name, SecuritySchemeKind.UNSUPPORTED,
                              reason="apiKey scheme without a valid 'in' and 'name'")

    if scheme_type == "http":
        http_scheme = str(raw.get("scheme", "")).lower()
        if http_scheme == "basic":
            return SecurityScheme(name, SecuritySchemeKind.HTTP_BASIC, location="header",
                                  parameter_name="Authorization")
        if http_scheme == "bearer":
            return SecurityScheme(name, SecuritySchemeKind.HTTP_BEARER, location="header",
                                  parameter_name="Authorization")
        return SecurityScheme(name, SecuritySchemeKind.UNSUPPORTED,
                              reason=f"HTTP authentication scheme {http_scheme!r}")

    if scheme_type == "oauth2":
        flows = raw.get("flows") or {}
        flow = flows.get("clientCredentials") if isinstance(flows, dict) else None
        if isinstance(flow, dict) and flow.get("tokenUrl"):
            return SecurityScheme(
                name,
                SecuritySchemeKind.OAUTH2_CLIENT_CREDENTIALS,
                location="header",
                parameter_name="Authorization",
                token_url=str(flow["tokenUrl"]),
                scopes=[str(s) for s in (flow.get("scopes") or {})],
            )
        return SecurityScheme(name, SecuritySchemeKind.UNSUPPORTED,
                              reason="oauth2 without a clientCredentials flow")

    return SecurityScheme(name, SecuritySchemeKind.UNSUPPORTED, reason=f"scheme type {scheme_type!r}")


# ---------------------------------------------------------------------------
# Operations and document
# ---------------------------------------------------------------------------

def _build_operation(path: str, method: str, raw: Any, location: str) -> Operation:
    raw = _expect_mapping(raw, location, "Operation")
    operation = Operation(
        path=path,
        method=method,
        location=location,
        operation_id=_text(raw.get("operationId")),
        summary=_text(raw.get("summary")),
        description=_text(raw.get("description")),
        deprecated=bool(raw.get("deprecated", False)),
        tags=[str(t) for t in _expect_list(raw.get("tags"), child_pointer(location, "tags"), "'tags'")],
    )

    params_location = child_pointer(location, "parameters")
    for index, param in enumerate(_expect_list(raw.get("parameters"), params_location, "'parameters'")):
        operation.parameters.append(build_parameter(param, child_pointer(params_location, index)))

    if raw.get("requestBody") is not None:
        operation.request_body = build_request_body(raw["requestBody"], child_pointer(location, "requestBody"))

    responses_location = child_pointer(location, "responses")
    for status, response in _expect_mapping(raw.get("responses"), responses_location, "'responses'").items():
        # YAML turns unquoted status codes into integers
        status = str(status)
        operation.responses[status] = build_response(status, response, child_pointer(responses_location, status))

    if "security" in raw:
        operation.security = _build_security(raw["security"], child_pointer(location, "security"))
    return operation


def build_path_item(path: str, raw: Any, location: str) -> PathItem:
    raw = _expect_mapping(raw, location, "Path item")
    item = PathItem(path=path, ref=_ref_or_none(raw, location))

    params_location = child_pointer(location, "parameters")
    for index, param in enumerate(_expect_list(raw.get("parameters"), params_location, "'parameters'")):
        item.parameters.append(build_parameter(param, child_pointer(params_location, index)))

    for key, value in raw.items():
        method = str(key).lower()
        if method in HTTP_METHODS:
            item.operations[method] = _build_operation(path, method, value, child_pointer(location, key))
    return item


def _build_components(raw: Any) -> ComponentsRegistry:
    location = "#/components"
    raw = _expect_mapping(raw, location, "'components'")
    registry = ComponentsRegistry()

    for name, schema in _expect_mapping(raw.get("schemas"), location + "/schemas", "'schemas'").items():
        name = str(name)
        registry.schemas[name] = build_schema(schema, COMPONENTS_SCHEMAS_PREFIX + _escape(name), name=name)

    for name, param in _expect_mapping(raw.get("parameters"), location + "/parameters", "'parameters'").items():
        registry.parameters[str(name)] = build_parameter(param, child_pointer(location, "parameters", name))

    bodies = _expect_mapping(raw.get("requestBodies"), location + "/requestBodies", "'requestBodies'")
    for name, body in bodies.items():
        registry.request_bodies[str(name)] = build_request_body(body, child_pointer(location, "requestBodies", name))

    for name, response in _expect_mapping(raw.get("responses"), location + "/responses", "'responses'").items():
        registry.responses[str(name)] = build_response(
            str(name), response, child_pointer(location, "responses", name))

    schemes = _expect_mapping(raw.get("securitySchemes"), location + "/securitySchemes", "'securitySchemes'")
    for name, scheme in schemes.items():
        registry.security_schemes[str(name)] = build_security_scheme(
            str(name), scheme, child_pointer(location, "securitySchemes", name))
    return registry


def build_document(data: dict[str, Any]) -> OpenApiDocument:
    """Build the document model from a parsed mapping."""
    if "openapi" not in data:
        if "swagger" in data:
            raise ParseError("Swagger 2.0 documents are not supported; convert to OpenAPI 3.x", "#/swagger")
        raise ParseError("Missing 'openapi' version field", "#/openapi")
    version = str(data["openapi"])
    if not re.match(r"^3\.\d+", version):
        raise ParseError(f"Unsupported OpenAPI version {version!r}", "#/openapi")

    info = _expect_mapping(data.get("info"), "#/info", "'info'")
    servers = [
        _substitute_server_variables(server)
        for server in _expect_list(data.get("servers"), "#/servers", "'servers'")
        if isinstance(server, dict)
    ]

    document = OpenApiDocument(
        openapi=version,
        title=str(info.get("title") or "OpenAPI server"),
        version=str(info.get("version") or "0.0.0"),
        description=_text(info.get("description")),
        servers=servers,
        components=_build_components(data.get("components")),
        security=_build_security(data.get("security"), "#/security"),
        raw=data,
    )

    for path, item in _expect_mapping(data.get("paths"), "#/paths", "'paths'").items():
        path = str(path)
        document.paths[path] = build_path_item(path, item, child_pointer("#/paths", path))
    return document
