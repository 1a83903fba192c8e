"""Tests for the FastMCP server adapter, driven through an in-memory MCP client."""

import json

from fastmcp import Client

from openapi_mcp.config import RuntimeConfig
from openapi_mcp.server import build_server


def _error_payload(result):
    text = result.content[0].text
    return json.loads(text[text.index("{"):])


class TestListTools:
    """Test the tool catalogue advertised over MCP."""

    async def test_tools_listed(self, petstore_artifact, upstream_client):
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            tools = {tool.name: tool for tool in await client.list_tools()}

        assert list(tools) == ["listPets", "createPet", "getPet", "deletePet"]
        get_pet = tools["getPet"]
        assert get_pet.description == "Info for a specific pet"
        assert get_pet.inputSchema["properties"] == {"petId": {"type": "integer"}}
        assert get_pet.inputSchema["required"] == ["petId"]

    async def test_object_output_schema_advertised(self, petstore_artifact, upstream_client):
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            tools = {tool.name: tool for tool in await client.list_tools()}

        assert tools["getPet"].outputSchema["type"] == "object"
        assert "required" not in tools["getPet"].outputSchema
        assert tools["getPet"].outputSchema["properties"]["name"]["type"] == ["string", "null"]
        # array results have no MCP output schema
        assert tools["listPets"].outputSchema is None

    async def test_output_schema_can_be_disabled(self, petstore_artifact, upstream_client):
        config = RuntimeConfig(expose_output_schema=False)
        mcp = build_server(petstore_artifact, config, client=upstream_client)
        async with Client(mcp) as client:
            tools = {tool.name: tool for tool in await client.list_tools()}

        assert tools["getPet"].outputSchema is None


class TestCallTool:
    """Test tool calls forwarded to the mock upstream."""

    async def test_success(self, petstore_artifact, upstream, upstream_client):
        upstream.route("GET", "/v1/pets/42", json_body={"name": "Rex"})
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            result = await client.call_tool("getPet", {"petId": 42})

        assert not result.is_error
        assert json.loads(result.content[0].text) == {"name": "Rex"}
        assert result.structured_content == {"name": "Rex"}

    async def test_array_result_as_text(self, petstore_artifact, upstream, upstream_client):
        upstream.route("GET", "/v1/pets", json_body=[{"name": "Rex"}, {"name": "Tom"}])
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            result = await client.call_tool("listPets", {})

        assert json.loads(result.content[0].text) == [{"name": "Rex"}, {"name": "Tom"}]

    async def test_upstream_error_is_tool_error(self, petstore_artifact, upstream, upstream_client):
        upstream.route("GET", "/v1/pets/404", status=404, json_body={"code": 404, "message": "not found"})
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            result = await client.call_tool("getPet", {"petId": 404}, raise_on_error=False)

        assert result.is_error
        payload = _error_payload(result)
        assert payload["status"] == 404
        assert payload["body"] == {"code": 404, "message": "not found"}

    async def test_validation_error_is_tool_error(self, petstore_artifact, upstream, upstream_client):
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            result = await client.call_tool("getPet", {"petId": "abc"}, raise_on_error=False)

        assert result.is_error
        assert upstream.requests == []

    async def test_server_keeps_serving_after_failure(self, petstore_artifact, upstream, upstream_client):
        upstream.route("GET", "/v1/pets/1", status=500, text="boom")
        upstream.route("GET", "/v1/pets/2", json_body={"name": "Tom"})
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            failed = await client.call_tool("getPet", {"petId": 1}, raise_on_error=False)
            ok = await client.call_tool("getPet", {"petId": 2})

        assert failed.is_error
        assert ok.structured_content == {"name": "Tom"}

    async def test_off_schema_success_not_an_error(self, petstore_artifact, upstream, upstream_client):
        upstream.route("GET", "/v1/pets/1", json_body={"id": 1, "name": None, "owner": "Sam"})
        mcp = build_server(petstore_artifact, RuntimeConfig(), client=upstream_client)
        async with Client(mcp) as client:
            result = await client.call_tool("getPet", {"petId": 1}, raise_on_error=False)

        assert not result.is_error
        assert result.structured_content == {"id": 1, "name": None, "owner": "Sam"}
