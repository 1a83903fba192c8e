"""Resolve `$ref` pointers into direct ownership.

Walks the document depth-first and replaces every Reference/Ref with the
node it points at. Schemas are looked up by pointer: component schemas come
from the registry, any other same-document pointer is built from the raw
document on first use. A visitation stack of pointers breaks cycles: meeting
a pointer that is already being expanded installs a BackReference instead of
recursing.

Path items and security schemes that are themselves `$ref`s are rebuilt from
the pointed-at mapping. Resolution runs in place and is idempotent.
"""

from __future__ import annotations

import logging

from .errors import UnresolvedReferenceError, UnsupportedReferenceError
from .loader import (
    build_parameter,
    build_path_item,
    build_request_body,
    build_response,
    build_schema,
    build_security_scheme,
)
from .model import (
    COMPONENTS_SCHEMAS_PREFIX,
    ArrayNode,
    BackReference,
    Composite,
    ObjectNode,
    OpenApiDocument,
    Parameter,
    PathItem,
    Ref,
    Reference,
    RequestBody,
    ResponseSpec,
    SchemaNode,
    pointer_name,
)

logger = logging.getLogger(__name__)

_COMPONENT_SECTIONS = {
    "parameters": "parameters",
    "requestBodies": "request_bodies",
    "responses": "responses",
}


def _unescape(token: str) -> str:
    return token.replace("~1", "/").replace("~0", "~")


class ReferenceResolver:
    """Resolve all references of one document."""

    def __init__(self, document: OpenApiDocument) -> None:
        self.document = document
        # pointer -> fully resolved schema; this is the schema arena
        self._arena: dict[str, SchemaNode] = {}
        self._stack: list[str] = []
        self._walked: set[int] = set()

    def resolve(self) -> OpenApiDocument:
        doc = self.document
        components = doc.components

        for name in list(components.schemas):
            pointer = COMPONENTS_SCHEMAS_PREFIX + name.replace("~", "~0").replace("/", "~1")
            components.schemas[name] = self._follow(pointer, pointer)

        for attr in _COMPONENT_SECTIONS.values():
            registry = getattr(components, attr)
            for name, item in list(registry.items()):
                registry[name] = self._resolve_item(item)

        schemes = components.security_schemes
        for name, scheme in list(schemes.items()):
            schemes[name] = self._resolve_scheme(name, scheme)

        for path_item in doc.paths.values():
            if path_item.ref is not None:
                self._merge_path_ref(path_item)
            path_item.parameters = [self._resolve_item(p) for p in path_item.parameters]
            for operation in path_item.operations.values():
                operation.parameters = [self._resolve_item(p) for p in operation.parameters]
                if operation.request_body is not None:
                    operation.request_body = self._resolve_item(operation.request_body)
                operation.responses = {
                    status: self._resolve_item(response)
                    for status, response in operation.responses.items()
                }

        doc.resolved = True
        logger.debug("Resolved %d schema pointers", len(self._arena))
        return doc

    # -- schemas ------------------------------------------------------------

    def _resolve_schema(self, node: SchemaNode) -> SchemaNode:
        if isinstance(node, Reference):
            return self._follow(node.pointer, node.meta.location)
        if id(node) in self._walked:
            return node
        self._walked.add(id(node))

        if isinstance(node, ArrayNode):
            if node.items is not None:
                node.items = self._resolve_schema(node.items)
        elif isinstance(node, ObjectNode):
            for name, child in node.properties.items():
                node.properties[name] = self._resolve_schema(child)
            if node.additional is not None and not isinstance(node.additional, bool):
                node.additional = self._resolve_schema(node.additional)
        elif isinstance(node, Composite):
            node.members = [self._resolve_schema(member) for member in node.members]
        return node

    def _follow(self, pointer: str, site: str) -> SchemaNode:
        if not pointer.startswith("#"):
            raise UnsupportedReferenceError(pointer, site)
        if pointer in self._stack:
            return BackReference(pointer=pointer, name=pointer_name(pointer))
        if pointer in self._arena:
            return self._arena[pointer]

        target = self._lookup_schema(pointer, site)
        self._stack.append(pointer)
        try:
            resolved = self._resolve_schema(target)
        finally:
            self._stack.pop()
        self._arena[pointer] = resolved
        return resolved

    def _lookup_schema(self, pointer: str, site: str) -> SchemaNode:
        schemas = self.document.components.schemas
        if pointer.startswith(COMPONENTS_SCHEMAS_PREFIX):
            name = _unescape(pointer[len(COMPONENTS_SCHEMAS_PREFIX):])
            if "/" not in pointer[len(COMPONENTS_SCHEMAS_PREFIX):] and name in schemas:
                return schemas[name]
        raw = self._lookup_raw(pointer, site)
        return build_schema(raw, pointer, name=pointer_name(pointer))

    def _lookup_raw(self, pointer: str, site: str):
        node = self.document.raw
        body = pointer[1:]
        if body and not body.startswith("/"):
            raise UnresolvedReferenceError(pointer, site)
        for token in body.split("/")[1:]:
            token = _unescape(token)
            if isinstance(node, dict) and token in node:
                node = node[token]
            elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
                node = node[int(token)]
            else:
                raise UnresolvedReferenceError(pointer, site)
        return node

    # -- parameters, request bodies, responses ------------------------------

    @staticmethod
    def _enter(ref: Ref, seen: set[str]) -> None:
        if not ref.pointer.startswith("#"):
            raise UnsupportedReferenceError(ref.pointer, ref.site)
        if ref.pointer in seen:
            raise UnresolvedReferenceError(ref.pointer, ref.site)
        seen.add(ref.pointer)

    def _merge_path_ref(self, item: PathItem) -> None:
        """Pull the operations and parameters of a referenced path item into `item`.

        Entries declared beside the `$ref` win over referenced ones.
        """
        seen: set[str] = set()
        ref = item.ref
        while ref is not None:
            self._enter(ref, seen)
            target = build_path_item(item.path, self._lookup_raw(ref.pointer, ref.site), ref.pointer)
            for method, operation in target.operations.items():
                item.operations.setdefault(method, operation)
            local = {(p.location, p.name) for p in item.parameters if isinstance(p, Parameter)}
            item.parameters.extend(
                p for p in target.parameters
                if not (isinstance(p, Parameter) and (p.location, p.name) in local)
            )
            ref = target.ref
        item.ref = None

    def _resolve_scheme(self, name: str, scheme):
        seen: set[str] = set()
        while isinstance(scheme, Ref):
            self._enter(scheme, seen)
            scheme = build_security_scheme(name, self._lookup_raw(scheme.pointer, scheme.site), scheme.pointer)
        return scheme

    def _resolve_item(self, item):
        seen: set[str] = set()
        while isinstance(item, Ref):
            self._enter(item, seen)
            item = self._lookup_item(item)

        if id(item) in self._walked:
            return item
        self._walked.add(id(item))

        if isinstance(item, Parameter):
            item.schema = self._resolve_schema(item.schema)
        elif isinstance(item, (RequestBody, ResponseSpec)):
            for media_type, schema in item.content.items():
                if schema is not None:
                    item.content[media_type] = self._resolve_schema(schema)
        return item

    def _lookup_item(self, ref: Ref):
        tokens = ref.pointer[1:].split("/")[1:]
        if len(tokens) == 3 and tokens[0] == "components" and tokens[1] in _COMPONENT_SECTIONS:
            registry = getattr(self.document.components, _COMPONENT_SECTIONS[tokens[1]])
            name = _unescape(tokens[2])
            if name in registry:
                return registry[name]
            raise UnresolvedReferenceError(ref.pointer, ref.site)

        raw = self._lookup_raw(ref.pointer, ref.site)
        section = tokens[-2] if len(tokens) >= 2 else ""
        if section == "parameters" or (isinstance(raw, dict) and "in" in raw and "name" in raw):
            return build_parameter(raw, ref.pointer)
        if section == "requestBodies":
            return build_request_body(raw, ref.pointer)
        return build_response(pointer_name(ref.pointer), raw, ref.pointer)


def resolve_document(document: OpenApiDocument) -> OpenApiDocument:
    """Resolve every reference in `document` in place and return it."""
    return ReferenceResolver(document).resolve()
