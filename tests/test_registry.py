import asyncio
import json
import unittest

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from responses import ToolResponse
from schema_validator import build_field_validators
from tools.registry import DYNAMIC, RegistryError, ToolRegistry, ToolSpec

_ECHO_SCHEMA = {
    "type": "object",
    "properties": {
        "text": {"type": "string", "description": "Text to echo"},
        "count": {"type": "integer", "default": 1},
        "note": {"type": "string"},
    },
    "required": ["text", "count"],
}


def _echo(arguments):
    return ToolResponse(json.dumps(arguments, sort_keys=True))


def _spec(name="echo", invoke=_echo, schema=None, description="Echo arguments"):
    return ToolSpec(
        name=name,
        title=description,
        description=description,
        fields=build_field_validators(schema if schema is not None else _ECHO_SCHEMA),
        invoke=invoke,
        kind=DYNAMIC,
    )


def _tools_by_name(server):
    return {tool.name: tool for tool in asyncio.run(server.list_tools())}


class ToolRegistryTests(unittest.TestCase):
    def setUp(self):
        self.server = FastMCP("registry-test")
        self.registry = ToolRegistry(self.server)

    def test_register_declares_inputs(self):
        self.registry.register(_spec())

        tool = _tools_by_name(self.server)["echo"]
        self.assertEqual(tool.description, "Echo arguments")
        self.assertEqual(set(tool.inputSchema["properties"]), {"text", "count", "note"})
        self.assertEqual(tool.inputSchema["required"], ["text"])
        self.assertEqual(tool.inputSchema["properties"]["count"]["default"], 1)
        self.assertEqual(tool.inputSchema["properties"]["text"]["description"], "Text to echo")
        self.assertIn("echo", self.registry)
        self.assertEqual(self.registry.names(kind=DYNAMIC), ["echo"])

    def test_call_passes_validated_arguments(self):
        self.registry.register(_spec())

        result = asyncio.run(self.server.call_tool("echo", {"text": "hi"}))
        self.assertFalse(result.isError)
        self.assertEqual(json.loads(result.content[0].text), {"count": 1, "text": "hi"})

    def test_error_response_sets_is_error(self):
        self.registry.register(_spec(invoke=lambda args: ToolResponse("Error doing it: boom", is_error=True)))

        result = asyncio.run(self.server.call_tool("echo", {"text": "hi"}))
        self.assertTrue(result.isError)
        self.assertEqual(result.content[0].text, "Error doing it: boom")

    def test_protocol_rejects_wrong_types(self):
        self.registry.register(_spec())
        with self.assertRaises(ToolError):
            asyncio.run(self.server.call_tool("echo", {"text": 5}))

    def test_tool_without_inputs(self):
        self.registry.register(_spec(name="ping", schema={"type": "string"}, invoke=lambda args: ToolResponse("pong")))

        tool = _tools_by_name(self.server)["ping"]
        self.assertEqual(tool.inputSchema.get("properties", {}), {})
        result = asyncio.run(self.server.call_tool("ping", {}))
        self.assertEqual(result.content[0].text, "pong")

    def test_duplicate_register_fails(self):
        self.registry.register(_spec())
        with self.assertRaisesRegex(RegistryError, "already registered"):
            self.registry.register(_spec())

    def test_update_replaces_handler_and_declaration(self):
        entry = self.registry.register(_spec())
        old_tool = self.server._tool_manager.get_tool("echo")

        entry.update(
            _spec(
                invoke=lambda args: ToolResponse("v2"),
                schema={"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
                description="Echo v2",
            )
        )

        tool = _tools_by_name(self.server)["echo"]
        self.assertEqual(tool.description, "Echo v2")
        self.assertEqual(set(tool.inputSchema["properties"]), {"q"})
        result = asyncio.run(self.server.call_tool("echo", {"q": "x"}))
        self.assertEqual(result.content[0].text, "v2")
        self.assertIs(self.registry.get("echo"), entry)

        # a call that already holds the previous tool finishes with the previous handler
        previous = asyncio.run(old_tool.run({"text": "a"}))
        self.assertEqual(json.loads(previous.content[0].text), {"count": 1, "text": "a"})

    def test_update_after_pop_fails(self):
        entry = self.registry.register(_spec())
        self.registry.pop("echo")
        with self.assertRaisesRegex(RegistryError, "not found for update"):
            entry.update(_spec())

    def test_remove_leaves_map_entry_to_caller(self):
        entry = self.registry.register(_spec())
        entry.remove()

        self.assertNotIn("echo", _tools_by_name(self.server))
        self.assertIn("echo", self.registry)
        self.assertIs(self.registry.pop("echo"), entry)
        self.assertNotIn("echo", self.registry)

        with self.assertRaisesRegex(RegistryError, "cannot remove tool 'echo'"):
            entry.remove()

    def test_input_names_need_not_be_identifiers(self):
        schema = {
            "type": "object",
            "properties": {
                "from": {"type": "string"},
                "to": {"type": "string"},
                "in": {"type": "array", "items": {"type": "integer"}},
                "_scope": {"type": "string", "default": "all"},
            },
            "required": ["from", "to"],
        }
        self.registry.register(_spec(name="window", schema=schema))

        tool = _tools_by_name(self.server)["window"]
        self.assertEqual(list(tool.inputSchema["properties"]), ["from", "to", "in", "_scope"])
        self.assertEqual(sorted(tool.inputSchema["required"]), ["from", "to"])

        result = asyncio.run(
            self.server.call_tool("window", {"from": "2024-01-01", "to": "2024-02-01", "in": [1, 2]})
        )
        self.assertFalse(result.isError)
        self.assertEqual(
            json.loads(result.content[0].text),
            {"_scope": "all", "from": "2024-01-01", "in": [1, 2], "to": "2024-02-01"},
        )

    def test_whole_float_reaches_integer_field(self):
        self.registry.register(_spec())

        result = asyncio.run(self.server.call_tool("echo", {"text": "hi", "count": 3.0}))
        self.assertFalse(result.isError)
        self.assertEqual(json.loads(result.content[0].text)["count"], 3.0)

    def test_name_taken_on_server_fails_registration(self):
        self.server.add_tool(lambda: "x", name="echo")
        with self.assertRaisesRegex(RegistryError, "cannot register tool 'echo'"):
            self.registry.register(_spec())
        self.assertNotIn("echo", self.registry)


if __name__ == "__main__":
    unittest.main()
