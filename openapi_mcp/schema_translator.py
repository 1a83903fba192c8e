"""Translate resolved schema nodes into MCP tool schemas.

Handles:
- Primitives (format, enum and bounds preserved; 3.0 boolean exclusive bounds made numeric)
- Arrays and objects (property order and required-ness preserved)
- allOf merging (last writer wins, or an error under the strict policy)
- oneOf/anyOf flattening into a described free-form schema
- `anyOf: [X, {type: null}]` collapsed to a nullable X
- Recursive back-references rendered as a one-level placeholder
- readOnly fields dropped from inputs, writeOnly fields dropped from outputs
- Large integer default sanitization (>= 2^53)
- HTML stripped from descriptions
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any

from .errors import InvalidSchemaError
from .model import (
    ArrayNode,
    BackReference,
    Composite,
    FreeForm,
    ObjectNode,
    Primitive,
    Reference,
    SchemaMeta,
    SchemaNode,
    TranslationWarning,
)

logger = logging.getLogger(__name__)

# Sentinel: integers >= 2^53 are unsafe for JSON serialization
MAX_SAFE_INT = 2**53

LAST_WRITER_WINS = "last-writer-wins"
ERROR = "error"
ALLOF_POLICIES = (LAST_WRITER_WINS, ERROR)


def strip_html(text: str) -> str:
    """Strip HTML tags and collapse whitespace."""
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def _sanitize_default(value: Any) -> Any:
    """Sanitize default values: replace unsafe large integers with None."""
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= MAX_SAFE_INT:
        return None
    return value


def _numeric_bounds(constraints: dict[str, Any]) -> dict[str, Any]:
    """Rewrite OpenAPI 3.0 boolean exclusive bounds into the numeric JSON Schema form.

    `{maximum: 100, exclusiveMaximum: true}` becomes `{exclusiveMaximum: 100}`;
    a false flag, or a true one with no bound beside it, is dropped.
    """
    bounds = dict(constraints)
    for flag, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
        value = bounds.get(flag)
        if not isinstance(value, bool):
            continue
        del bounds[flag]
        if value and bound in bounds:
            bounds[flag] = bounds.pop(bound)
    return bounds


def _is_null_schema(node: SchemaNode) -> bool:
    return isinstance(node, Primitive) and node.type == "null"


def _add_null(schema: dict[str, Any]) -> dict[str, Any]:
    schema_type = schema.get("type")
    if isinstance(schema_type, str) and schema_type != "null":
        schema["type"] = [schema_type, "null"]
    elif isinstance(schema_type, list) and "null" not in schema_type:
        schema["type"] = [*schema_type, "null"]
    if "enum" in schema and None not in schema["enum"]:
        schema["enum"] = [*schema["enum"], None]
    return schema


def _is_object_schema(schema: dict[str, Any]) -> bool:
    schema_type = schema.get("type")
    return schema_type == "object" or "properties" in schema


class SchemaTranslator:
    """Convert SchemaNode trees into JSON-Schema dicts accepted by MCP hosts.

    `mode` is "input" for tool arguments and "output" for results. Degradations
    are appended to `warnings` once per (kind, location, message).
    """

    def __init__(
        self,
        allof_conflicts: str = LAST_WRITER_WINS,
        warnings: list[TranslationWarning] | None = None,
    ) -> None:
        if allof_conflicts not in ALLOF_POLICIES:
            raise ValueError(f"allof_conflicts must be one of {ALLOF_POLICIES}, got {allof_conflicts!r}")
        self.allof_conflicts = allof_conflicts
        self.warnings = warnings if warnings is not None else []
        self._reported: set[tuple[str, str, str]] = set()

    def _warn(self, kind: str, location: str, message: str) -> None:
        key = (kind, location, message)
        if key in self._reported:
            return
        self._reported.add(key)
        self.warnings.append(TranslationWarning(kind, location, message))
        logger.warning("%s (at %s)", message, location)

    def translate(self, node: SchemaNode, mode: str = "input") -> dict[str, Any]:
        """Translate one node; always returns a schema unless the node is malformed."""
        if isinstance(node, Primitive):
            schema = self._primitive(node)
        elif isinstance(node, ArrayNode):
            schema = self._array(node, mode)
        elif isinstance(node, ObjectNode):
            schema = self._object(node, mode)
        elif isinstance(node, Composite):
            return self._composite(node, mode)
        elif isinstance(node, FreeForm):
            schema = {}
        elif isinstance(node, BackReference):
            return self._back_reference(node)
        elif isinstance(node, Reference):
            raise InvalidSchemaError(
                f"Reference {node.pointer!r} reached translation unresolved", node.meta.location)
        else:
            raise TypeError(f"Unknown schema node {node!r}")

        self._apply_meta(schema, node.meta)
        return schema

    # -- variants -----------------------------------------------------------

    def _primitive(self, node: Primitive) -> dict[str, Any]:
        schema: dict[str, Any] = {}
        if node.type:
            schema["type"] = node.type
        if node.format:
            schema["format"] = node.format
        if node.enum is not None:
            schema["enum"] = list(node.enum)
        schema.update(_numeric_bounds(node.constraints))
        return schema

    def _array(self, node: ArrayNode, mode: str) -> dict[str, Any]:
        if node.malformed or node.items is None:
            raise InvalidSchemaError(node.malformed or "array schema has no 'items'", node.meta.location)
        schema = {"type": "array", "items": self.translate(node.items, mode)}
        schema.update(node.constraints)
        return schema

    def _object(self, node: ObjectNode, mode: str) -> dict[str, Any]:
        if node.malformed:
            raise InvalidSchemaError(node.malformed, node.meta.location)

        properties: dict[str, Any] = {}
        for name, child in node.properties.items():
            child_meta = getattr(child, "meta", None)
            if child_meta is not None:
                if mode == "input" and child_meta.read_only:
                    continue
                if mode == "output" and child_meta.write_only:
                    continue
            properties[name] = self.translate(child, mode)

        schema: dict[str, Any] = {"type": "object", "properties": properties}
        required = [name for name in node.required if name in properties]
        if required:
            schema["required"] = required
        if isinstance(node.additional, bool):
            if not node.additional:
                schema["additionalProperties"] = False
        elif node.additional is not None:
            schema["additionalProperties"] = self.translate(node.additional, mode)
        schema.update(node.constraints)
        return schema

    def _composite(self, node: Composite, mode: str) -> dict[str, Any]:
        if node.malformed:
            raise InvalidSchemaError(node.malformed, node.meta.location)

        if node.combinator == "allOf":
            schema = self._merge_all_of(node, mode)
            self._apply_meta(schema, node.meta)
            return schema

        non_null = [member for member in node.members if not _is_null_schema(member)]
        if len(non_null) == 1:
            schema = self.translate(non_null[0], mode)
            if len(non_null) < len(node.members) or node.meta.nullable:
                _add_null(schema)
            self._apply_meta(schema, node.meta)
            return schema

        names = [self._member_name(member, index) for index, member in enumerate(node.members)]
        label = "One of" if node.combinator == "oneOf" else "Any of"
        summary = f"{label}: {', '.join(names)}."
        self._warn(
            "union-flattened",
            node.meta.location,
            f"{node.combinator} with {len(node.members)} members flattened to a free-form schema",
        )
        schema: dict[str, Any] = {}
        self._apply_meta(schema, node.meta)
        schema["description"] = f"{schema['description']} {summary}" if schema.get("description") else summary
        return schema

    def _merge_all_of(self, node: Composite, mode: str) -> dict[str, Any]:
        translated = [t for t in (self.translate(member, mode) for member in node.members) if t]
        if not translated:
            return {}
        if len(translated) == 1:
            return translated[0]

        if not all(_is_object_schema(t) for t in translated):
            # Mixed or primitive members: plain key merge
            merged: dict[str, Any] = {}
            for part in translated:
                for key, value in part.items():
                    if key in merged and merged[key] != value and key != "description":
                        self._conflict(node, f"allOf members disagree on {key!r}")
                    merged[key] = copy.deepcopy(value)
            return merged

        merged = {"type": "object", "properties": {}}
        required: list[str] = []
        for part in translated:
            for name, prop in part.get("properties", {}).items():
                existing = merged["properties"].get(name)
                if existing is not None and existing != prop:
                    self._conflict(node, f"allOf members disagree on property {name!r}; the later definition wins")
                merged["properties"][name] = copy.deepcopy(prop)
            for name in part.get("required", []):
                if name not in required:
                    required.append(name)
            for key in ("additionalProperties", "minProperties", "maxProperties"):
                if key in part:
                    merged[key] = copy.deepcopy(part[key])
            if "description" in part and "description" not in merged:
                merged["description"] = part["description"]
        if required:
            merged["required"] = required
        return merged

    def _conflict(self, node: Composite, message: str) -> None:
        if self.allof_conflicts == ERROR:
            raise InvalidSchemaError(message, node.meta.location)
        self._warn("allof-conflict", node.meta.location, message)

    def _back_reference(self, node: BackReference) -> dict[str, Any]:
        return {
            "description": f"Recursive reference to {node.name}; nested structure is not expanded.",
            "x-recursive-ref": node.pointer,
        }

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _member_name(member: SchemaNode, index: int) -> str:
        if isinstance(member, BackReference):
            return member.name
        meta = member.meta
        if meta.name:
            return meta.name
        if meta.title:
            return meta.title
        if isinstance(member, Primitive) and member.type:
            return member.type
        if isinstance(member, ArrayNode):
            return "array"
        return f"option {index + 1}"

    @staticmethod
    def _apply_meta(schema: dict[str, Any], meta: SchemaMeta) -> None:
        if meta.title and "title" not in schema:
            schema["title"] = meta.title
        if meta.description:
            schema["description"] = strip_html(meta.description)
        if meta.has_default:
            default = _sanitize_default(meta.default)
            if default is not None:
                schema["default"] = default
        if meta.nullable:
            _add_null(schema)
