"""Turn one resolved operation into a tool definition and binding plan.

Input schema layout, in order:
- every parameter (path-level parameters first, overridden by operation-level
  ones with the same location and name)
- the request body: a plain JSON object body has its properties hoisted to the
  top level; any other body becomes a single `body` field

Name clashes never drop a field. The parameter keeps its name and the body
property is renamed `<name>_body`; a parameter repeated under another location
becomes `<name>_<location>`. Every rename is spelled out in the tool
description.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .artifact import BindingRule, Destination, ParameterBindingPlan, ToolDefinition
from .model import Operation, Parameter, ParameterLocation, PathItem, RequestBody, ResponseSpec
from .schema_translator import SchemaTranslator, strip_html

logger = logging.getLogger(__name__)

# Header parameters that OpenAPI says must be ignored
_IGNORED_HEADERS = {"accept", "content-type", "authorization"}

# Preferred request body media types, most preferred first
_BODY_MEDIA_PREFERENCE = (
    "application/json",
    "application/x-www-form-urlencoded",
    "multipart/form-data",
    "text/plain",
)

_LOCATION_DESTINATIONS: dict[ParameterLocation, Destination] = {
    ParameterLocation.PATH: Destination.PATH,
    ParameterLocation.QUERY: Destination.QUERY,
    ParameterLocation.HEADER: Destination.HEADER,
    ParameterLocation.COOKIE: Destination.COOKIE,
}

_SUCCESS_STATUS = re.compile(r"^2(\d\d|XX)$", re.IGNORECASE)


def is_json_media_type(media_type: str | None) -> bool:
    if not media_type:
        return False
    base = media_type.split(";", 1)[0].strip().lower()
    return base == "application/json" or base.endswith("+json")


def choose_media_type(content: dict[str, Any]) -> str | None:
    """Pick the request body media type the bridge will send."""
    if not content:
        return None
    for media_type in content:
        if is_json_media_type(media_type):
            return media_type
    for preferred in _BODY_MEDIA_PREFERENCE:
        if preferred in content:
            return preferred
    return next(iter(content))


def merge_parameters(path_item: PathItem, operation: Operation) -> list[Parameter]:
    """Merge path-level and operation-level parameters, operation-level overriding."""
    merged: list[Parameter] = [p for p in path_item.parameters if isinstance(p, Parameter)]
    for param in operation.parameters:
        if not isinstance(param, Parameter):
            continue
        key = (param.location, param.name)
        for index, existing in enumerate(merged):
            if (existing.location, existing.name) == key:
                merged[index] = param
                break
        else:
            merged.append(param)
    return merged


def _free_name(candidate: str, taken: set[str], suffix: str) -> str:
    if candidate not in taken:
        return candidate
    name = f"{candidate}{suffix}"
    counter = 2
    while name in taken:
        name = f"{candidate}{suffix}_{counter}"
        counter += 1
    return name


def _describe(operation: Operation) -> str:
    text = operation.description or operation.summary
    if text:
        text = strip_html(text)
    return text or f"{operation.method.upper()} {operation.path}"


class OperationMapper:
    """Synthesize the MCP-facing view of operations."""

    def __init__(self, translator: SchemaTranslator) -> None:
        self.translator = translator

    def map(
        self,
        path_item: PathItem,
        operation: Operation,
        name: str,
        notes: list[str] | None = None,
    ) -> tuple[ToolDefinition, ParameterBindingPlan]:
        notes = list(notes or [])
        properties: dict[str, Any] = {}
        required: list[str] = []
        rules: list[BindingRule] = []

        for param in merge_parameters(path_item, operation):
            if param.location is ParameterLocation.HEADER and param.name.lower() in _IGNORED_HEADERS:
                continue
            field = _free_name(param.name, set(properties), f"_{param.location.value}")
            if field != param.name:
                notes.append(
                    f"The {param.location.value} parameter '{param.name}' is exposed as '{field}'."
                )
            schema = self.translator.translate(param.schema, "input")
            if param.description and "description" not in schema:
                schema["description"] = strip_html(param.description)
            properties[field] = schema
            if param.required:
                required.append(field)
            rules.append(BindingRule(
                field=field,
                destination=_LOCATION_DESTINATIONS[param.location],
                name=param.name,
                style=param.effective_style,
                explode=param.effective_explode,
            ))

        body = operation.request_body
        media_type = None
        body_required = False
        if isinstance(body, RequestBody) and body.content:
            media_type = choose_media_type(body.content)
            body_required = body.required
            self._map_body(body, media_type, properties, required, rules, notes)

        input_schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            input_schema["required"] = required

        description = _describe(operation)
        if operation.deprecated:
            description = f"Deprecated. {description}"
        if notes:
            description = " ".join([description, *notes])

        definition = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema,
            output_schema=self._output_schema(operation),
            method=operation.method.upper(),
            path=operation.path,
            operation_id=operation.operation_id,
            deprecated=operation.deprecated,
        )
        plan = ParameterBindingPlan(rules=rules, body_media_type=media_type, body_required=body_required)
        return definition, plan

    def _map_body(
        self,
        body: RequestBody,
        media_type: str,
        properties: dict[str, Any],
        required: list[str],
        rules: list[BindingRule],
        notes: list[str],
    ) -> None:
        node = body.content.get(media_type)
        schema = self.translator.translate(node, "input") if node is not None else {}

        hoist = (
            is_json_media_type(media_type)
            and schema.get("type") == "object"
            and bool(schema.get("properties"))
            # an additionalProperties schema makes the body a map
            and not isinstance(schema.get("additionalProperties"), dict)
        )
        if hoist:
            body_required = set(schema.get("required", [])) if body.required else set()
            for prop_name, prop_schema in schema["properties"].items():
                field = _free_name(prop_name, set(properties), "_body")
                if field != prop_name:
                    notes.append(
                        f"Request body field '{prop_name}' is exposed as '{field}' "
                        "because a parameter already uses that name."
                    )
                properties[field] = prop_schema
                if prop_name in body_required:
                    required.append(field)
                rules.append(BindingRule(field=field, destination=Destination.BODY_FIELD, name=prop_name))
            return

        field = _free_name("body", set(properties), "_payload")
        if field != "body":
            notes.append(f"The request body is passed as '{field}'.")
        if body.description and "description" not in schema:
            schema["description"] = strip_html(body.description)
        properties[field] = schema
        if body.required:
            required.append(field)
        rules.append(BindingRule(field=field, destination=Destination.WHOLE_BODY, name=field))

    def _output_schema(self, operation: Operation) -> dict[str, Any]:
        for status, response in operation.responses.items():
            if not isinstance(response, ResponseSpec) or not _SUCCESS_STATUS.match(status):
                continue
            for node in response.content.values():
                return self.translator.translate(node, "output") if node is not None else {}
            return {}
        return {}
