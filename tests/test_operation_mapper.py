"""Tests for the operation_mapper module."""

from openapi_mcp.artifact import Destination
from openapi_mcp.loader import build_document
from openapi_mcp.operation_mapper import OperationMapper, choose_media_type, is_json_media_type
from openapi_mcp.resolver import resolve_document
from openapi_mcp.schema_translator import SchemaTranslator

from conftest import minimal_spec


_USER = {
    "type": "object",
    "required": ["name"],
    "properties": {"name": {"type": "string"}, "age": {"type": "integer"}},
}


def _map(paths, path, method, name="tool", **extra):
    doc = resolve_document(build_document(minimal_spec(paths, **extra)))
    path_item = doc.paths[path]
    return OperationMapper(SchemaTranslator()).map(path_item, path_item.operations[method], name)


def _rules(plan):
    return {rule.field: (rule.destination, rule.name) for rule in plan.rules}


class TestMediaTypes:
    """Test request body media type selection."""

    def test_json_detection(self):
        assert is_json_media_type("application/json; charset=utf-8")
        assert is_json_media_type("application/merge-patch+json")
        assert not is_json_media_type("text/plain")

    def test_json_preferred(self):
        assert choose_media_type({"text/plain": None, "application/vnd.api+json": None}) == "application/vnd.api+json"

    def test_form_before_unknown(self):
        assert choose_media_type({"application/xml": None, "multipart/form-data": None}) == "multipart/form-data"

    def test_first_declared_fallback(self):
        assert choose_media_type({"application/octet-stream": None}) == "application/octet-stream"


class TestBodyHoisting:
    """Test request body property hoisting."""

    def test_json_object_body_hoisted(self):
        definition, plan = _map({"/users": {"post": {
            "requestBody": {"required": True, "content": {"application/json": {"schema": _USER}}},
            "responses": {},
        }}}, "/users", "post")
        assert list(definition.input_schema["properties"]) == ["name", "age"]
        assert definition.input_schema["required"] == ["name"]
        assert _rules(plan) == {
            "name": (Destination.BODY_FIELD, "name"),
            "age": (Destination.BODY_FIELD, "age"),
        }
        assert plan.body_media_type == "application/json"
        assert plan.body_required

    def test_optional_body_makes_fields_optional(self):
        definition, _ = _map({"/users": {"post": {
            "requestBody": {"content": {"application/json": {"schema": _USER}}},
            "responses": {},
        }}}, "/users", "post")
        assert "required" not in definition.input_schema

    def test_collision_with_path_parameter(self):
        definition, plan = _map({"/users/{name}": {"put": {
            "parameters": [{"name": "name", "in": "path", "schema": {"type": "string"}}],
            "requestBody": {"required": True, "content": {"application/json": {"schema": _USER}}},
            "responses": {},
        }}}, "/users/{name}", "put")
        assert list(definition.input_schema["properties"]) == ["name", "name_body", "age"]
        assert definition.input_schema["required"] == ["name", "name_body"]
        assert _rules(plan)["name"] == (Destination.PATH, "name")
        assert _rules(plan)["name_body"] == (Destination.BODY_FIELD, "name")
        assert "'name_body'" in definition.description

    def test_array_body_is_whole_body(self):
        definition, plan = _map({"/users": {"post": {
            "requestBody": {"required": True, "content": {"application/json": {
                "schema": {"type": "array", "items": _USER},
            }}},
            "responses": {},
        }}}, "/users", "post")
        assert definition.input_schema["properties"]["body"]["type"] == "array"
        assert definition.input_schema["required"] == ["body"]
        assert _rules(plan) == {"body": (Destination.WHOLE_BODY, "body")}

    def test_map_body_is_whole_body(self):
        definition, plan = _map({"/labels": {"put": {
            "requestBody": {"content": {"application/json": {
                "schema": {"type": "object", "properties": {"a": {}}, "additionalProperties": {"type": "string"}},
            }}},
            "responses": {},
        }}}, "/labels", "put")
        assert _rules(plan) == {"body": (Destination.WHOLE_BODY, "body")}

    def test_closed_object_body_hoisted(self):
        closed = dict(_USER, additionalProperties=False)
        definition, plan = _map({"/users": {"post": {
            "requestBody": {"required": True, "content": {"application/json": {"schema": closed}}},
            "responses": {},
        }}}, "/users", "post")
        assert list(definition.input_schema["properties"]) == ["name", "age"]
        assert _rules(plan) == {
            "name": (Destination.BODY_FIELD, "name"),
            "age": (Destination.BODY_FIELD, "age"),
        }

    def test_text_body(self):
        definition, plan = _map({"/notes": {"post": {
            "requestBody": {"required": True, "content": {"text/plain": {"schema": {"type": "string"}}}},
            "responses": {},
        }}}, "/notes", "post")
        assert definition.input_schema["properties"]["body"] == {"type": "string"}
        assert plan.body_media_type == "text/plain"

    def test_body_name_taken_by_parameter(self):
        definition, plan = _map({"/notes": {"post": {
            "parameters": [{"name": "body", "in": "query", "schema": {"type": "string"}}],
            "requestBody": {"content": {"text/plain": {"schema": {"type": "string"}}}},
            "responses": {},
        }}}, "/notes", "post")
        assert _rules(plan)["body_payload"] == (Destination.WHOLE_BODY, "body_payload")


class TestParameters:
    """Test parameter mapping and binding rules."""

    def test_path_level_parameters_inherited_and_overridden(self):
        definition, plan = _map({"/pets/{petId}": {
            "parameters": [
                {"name": "petId", "in": "path", "schema": {"type": "string"}},
                {"name": "verbose", "in": "query", "schema": {"type": "boolean"}},
            ],
            "get": {
                "parameters": [{"name": "petId", "in": "path", "schema": {"type": "integer"}}],
                "responses": {},
            },
        }}, "/pets/{petId}", "get")
        assert definition.input_schema["properties"]["petId"] == {"type": "integer"}
        assert list(definition.input_schema["properties"]) == ["petId", "verbose"]
        assert definition.input_schema["required"] == ["petId"]

    def test_same_name_different_locations(self):
        definition, plan = _map({"/items": {"get": {
            "parameters": [
                {"name": "id", "in": "query", "schema": {"type": "string"}},
                {"name": "id", "in": "header", "schema": {"type": "string"}},
            ],
            "responses": {},
        }}}, "/items", "get")
        assert _rules(plan) == {
            "id": (Destination.QUERY, "id"),
            "id_header": (Destination.HEADER, "id"),
        }
        assert "'id_header'" in definition.description

    def test_reserved_headers_ignored(self):
        definition, _ = _map({"/items": {"get": {
            "parameters": [
                {"name": "Accept", "in": "header", "schema": {"type": "string"}},
                {"name": "X-Trace", "in": "header", "schema": {"type": "string"}},
            ],
            "responses": {},
        }}}, "/items", "get")
        assert list(definition.input_schema["properties"]) == ["X-Trace"]

    def test_parameter_description_carried(self):
        definition, _ = _map({"/items": {"get": {
            "parameters": [{"name": "q", "in": "query", "description": "Search <i>text</i>",
                            "schema": {"type": "string"}}],
            "responses": {},
        }}}, "/items", "get")
        assert definition.input_schema["properties"]["q"]["description"] == "Search text"

    def test_style_and_explode_recorded(self):
        _, plan = _map({"/items": {"get": {
            "parameters": [{"name": "filter", "in": "query", "style": "deepObject", "explode": True,
                            "schema": {"type": "object"}}],
            "responses": {},
        }}}, "/items", "get")
        rule = plan.rules[0]
        assert (rule.style, rule.explode) == ("deepObject", True)


class TestDescriptionAndOutput:
    """Test tool descriptions and output schemas."""

    def test_description_prefers_description(self):
        definition, _ = _map({"/a": {"get": {"summary": "Short", "description": "Long.", "responses": {}}}},
                             "/a", "get")
        assert definition.description == "Long."

    def test_description_fallback(self):
        definition, _ = _map({"/a": {"get": {"responses": {}}}}, "/a", "get")
        assert definition.description == "GET /a"

    def test_deprecated_prefix(self):
        definition, _ = _map({"/a": {"get": {"summary": "Old", "deprecated": True, "responses": {}}}},
                             "/a", "get")
        assert definition.description == "Deprecated. Old"
        assert definition.deprecated

    def test_output_schema_from_first_success(self, petstore_spec):
        doc = resolve_document(build_document(petstore_spec))
        path_item = doc.paths["/pets/{petId}"]
        definition, _ = OperationMapper(SchemaTranslator()).map(path_item, path_item.operations["get"], "getPet")
        assert definition.output_schema["type"] == "object"
        # readOnly fields belong to output only
        assert "id" in definition.output_schema["properties"]
        assert definition.method == "GET"
        assert definition.path == "/pets/{petId}"

    def test_read_only_excluded_from_input(self, petstore_spec):
        petstore_spec["paths"]["/pets"]["post"]["requestBody"]["content"]["application/json"]["schema"] = {
            "$ref": "#/components/schemas/Pet",
        }
        doc = resolve_document(build_document(petstore_spec))
        path_item = doc.paths["/pets"]
        definition, _ = OperationMapper(SchemaTranslator()).map(path_item, path_item.operations["post"], "createPet")
        assert list(definition.input_schema["properties"]) == ["name", "tag"]

    def test_no_success_response(self):
        definition, _ = _map({"/a": {"delete": {"responses": {"404": {"description": "missing"}}}}}, "/a", "delete")
        assert definition.output_schema == {}

    def test_wildcard_success(self):
        definition, _ = _map({"/a": {"get": {"responses": {"2XX": {
            "description": "ok",
            "content": {"application/json": {"schema": {"type": "string"}}},
        }}}}}, "/a", "get")
        assert definition.output_schema == {"type": "string"}
