"""Shared fixtures: a small petstore document and a recording mock upstream.

The upstream is an httpx.MockTransport, so bridge and server tests run the
real request/response path without a network.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Callable

import httpx
import pytest

from openapi_mcp.artifact import ServerArtifact
from openapi_mcp.builder import build_artifact
from openapi_mcp.loader import build_document


BASE_URL = "https://api.example.test/v1"

PETSTORE: dict[str, Any] = {
    "openapi": "3.0.3",
    "info": {"title": "Swagger Petstore", "version": "1.0.0", "description": "A <b>sample</b> pet store."},
    "servers": [{"url": BASE_URL}],
    "security": [{"api_key": []}],
    "paths": {
        "/pets": {
            "get": {
                "operationId": "listPets",
                "summary": "List all pets",
                "parameters": [
                    {"name": "limit", "in": "query", "schema": {"type": "integer", "maximum": 100}},
                    {"name": "tags", "in": "query", "schema": {"type": "array", "items": {"type": "string"}}},
                ],
                "responses": {
                    "200": {
                        "description": "A list of pets",
                        "content": {"application/json": {"schema": {
                            "type": "array", "items": {"$ref": "#/components/schemas/Pet"},
                        }}},
                    },
                },
            },
            "post": {
                "operationId": "createPet",
                "summary": "Create a pet",
                "requestBody": {
                    "required": True,
                    "content": {"application/json": {"schema": {"$ref": "#/components/schemas/NewPet"}}},
                },
                "responses": {
                    "201": {
                        "description": "Created",
                        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Pet"}}},
                    },
                },
            },
        },
        "/pets/{petId}": {
            "parameters": [
                {"name": "petId", "in": "path", "required": True, "schema": {"type": "integer"}},
            ],
            "get": {
                "operationId": "getPet",
                "description": "Info for a specific pet",
                "responses": {
                    "200": {
                        "description": "The pet",
                        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Pet"}}},
                    },
                    "404": {"$ref": "#/components/responses/NotFound"},
                },
            },
            "delete": {
                "operationId": "deletePet",
                "security": [{"oidc": []}],
                "responses": {"204": {"description": "Deleted"}},
            },
        },
    },
    "components": {
        "schemas": {
            "NewPet": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": {"type": "string"},
                    "tag": {"type": "string"},
                },
            },
            "Pet": {
                "allOf": [
                    {"$ref": "#/components/schemas/NewPet"},
                    {"type": "object", "properties": {"id": {"type": "integer", "readOnly": True}}},
                ],
            },
            "Error": {
                "type": "object",
                "properties": {"code": {"type": "integer"}, "message": {"type": "string"}},
            },
        },
        "responses": {
            "NotFound": {
                "description": "Not found",
                "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Error"}}},
            },
        },
        "securitySchemes": {
            "api_key": {"type": "apiKey", "in": "header", "name": "X-API-Key"},
            "oidc": {"type": "openIdConnect", "openIdConnectUrl": "https://id.example.test/.well-known"},
        },
    },
}


def minimal_spec(paths: dict[str, Any], **extra: Any) -> dict[str, Any]:
    """An OpenAPI 3.0 document with just the given paths (plus any top-level extras)."""
    spec = {
        "openapi": "3.0.3",
        "info": {"title": "Test API", "version": "1.0"},
        "servers": [{"url": BASE_URL}],
        "paths": paths,
    }
    spec.update(extra)
    return spec


@pytest.fixture
def petstore_spec() -> dict[str, Any]:
    return copy.deepcopy(PETSTORE)


@pytest.fixture
def petstore_artifact(petstore_spec) -> ServerArtifact:
    return build_artifact(build_document(petstore_spec)).artifact


# ---------------------------------------------------------------------------
# Mock upstream
# ---------------------------------------------------------------------------

class Upstream:
    """Route table for httpx.MockTransport that records every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], Any]] = {}

    def route(self, method: str, path: str, status: int = 200, json_body: Any = None,
              text: str | None = None, content: bytes | None = None, headers: dict | None = None) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if json_body is not None:
                return httpx.Response(status, json=json_body, headers=headers)
            if text is not None:
                return httpx.Response(status, text=text, headers=headers)
            return httpx.Response(status, content=content or b"", headers=headers)
        self.routes[(method.upper(), path)] = respond

    def on(self, method: str, path: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[(method.upper(), path)] = handler

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if (method is None or r.method == method.upper()) and (path is None or r.url.path == path)
        ]

    def handler(self, request: httpx.Request):
        self.requests.append(request)
        respond = self.routes.get((request.method, request.url.path))
        if respond is None:
            return httpx.Response(404, json={"detail": f"no route for {request.method} {request.url.path}"})
        return respond(request)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
async def upstream_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client
