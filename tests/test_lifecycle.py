import asyncio
import json
import tempfile
import unittest
from unittest import mock

from mcp.server.fastmcp import FastMCP

from db.postgres import ColumnMeta, QueryResult
from tool_store import ToolDefinition, ToolStore, ToolStoreError
from tools.builtin import build_builtin_specs
from tools.lifecycle import PROTECTED_TOOLS, ToolLifecycle
from tools.registry import DYNAMIC, ToolRegistry

_USER_SCHEMA = {
    "type": "object",
    "properties": {"user_id": {"type": "integer", "description": "User id"}},
    "required": ["user_id"],
}


class LifecycleTestBase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.store = ToolStore(self._tmp.name)
        self.store.ensure_data_directory()
        self.server = FastMCP("lifecycle-test")
        self.registry = ToolRegistry(self.server)
        self.executor = mock.Mock(
            return_value=QueryResult(rows=[{"id": 1}], row_count=1, fields=[ColumnMeta("id", 23)])
        )
        self.resolver = mock.Mock(return_value={23: "int4"})
        self.lifecycle = ToolLifecycle(self.registry, self.store, executor=self.executor, type_resolver=self.resolver)

    def _server_tools(self):
        return {tool.name: tool for tool in asyncio.run(self.server.list_tools())}

    def _save_get_user(self, **overrides):
        kwargs = {
            "tool_name": "get_user",
            "description": "Get a user",
            "sql_query": "SELECT * FROM users WHERE id = :user_id",
            "parameter_schema": _USER_SCHEMA,
        }
        kwargs.update(overrides)
        return self.lifecycle.save_tool(**kwargs)


class SaveToolTests(LifecycleTestBase):
    def test_create_persists_then_registers(self):
        response = self._save_get_user()

        self.assertFalse(response.is_error, response.text)
        self.assertEqual(response.text, "Successfully created tool 'get_user' with 1 parameter: user_id")
        stored = self.store.load("get_user")
        self.assertEqual(stored.sql_prepared, "SELECT * FROM users WHERE id = $1")
        self.assertEqual(stored.parameter_order, ["user_id"])
        self.assertEqual(self.registry.names(kind=DYNAMIC), ["get_user"])
        self.assertIn("get_user", self._server_tools())

    def test_created_tool_is_callable(self):
        self._save_get_user()

        result = asyncio.run(self.server.call_tool("get_user", {"user_id": 7}))
        self.assertFalse(result.isError)
        self.executor.assert_called_once_with("SELECT * FROM users WHERE id = $1", [7])
        self.assertEqual(json.loads(result.content[0].text)["fields"][0]["dataType"], "int4")

    def test_parameter_count_message(self):
        response = self._save_get_user(
            tool_name="by_xy",
            sql_query="SELECT * FROM t WHERE a = :x AND b = :y AND c = :x",
            parameter_schema={"type": "object", "properties": {"x": {}, "y": {}}},
        )
        self.assertEqual(response.text, "Successfully created tool 'by_xy' with 2 parameters: x, y")
        stored = self.store.load("by_xy")
        self.assertEqual(stored.sql_prepared, "SELECT * FROM t WHERE a = $1 AND b = $2 AND c = $1")
        self.assertEqual(stored.parameter_order, ["x", "y"])

        response = self._save_get_user(tool_name="count_all", sql_query="SELECT count(*) FROM t", parameter_schema={})
        self.assertEqual(response.text, "Successfully created tool 'count_all' with 0 parameters: none")

    def test_conflict_without_overwrite_changes_nothing(self):
        self._save_get_user()
        record_before = self.store.load("get_user").to_dict()
        entry_before = self.registry.get("get_user")
        tool_before = self.server._tool_manager.get_tool("get_user")

        response = self._save_get_user(description="Changed", sql_query="SELECT 2")

        self.assertTrue(response.is_error)
        self.assertEqual(
            response.text,
            "Error saving tool 'get_user': Tool with name 'get_user' already exists. "
            "Set overwrite=true to update it.",
        )
        self.assertEqual(self.store.load("get_user").to_dict(), record_before)
        self.assertIs(self.registry.get("get_user"), entry_before)
        self.assertIs(self.server._tool_manager.get_tool("get_user"), tool_before)

    def test_update_with_overwrite(self):
        self._save_get_user()
        entry = self.registry.get("get_user")

        response = self._save_get_user(
            description="Get a user by status",
            sql_query="SELECT * FROM users WHERE id = :user_id AND status = :status",
            parameter_schema={
                "type": "object",
                "properties": {"user_id": {"type": "integer"}, "status": {"type": "string", "default": "active"}},
                "required": ["user_id"],
            },
            overwrite=True,
        )

        self.assertEqual(response.text, "Successfully updated tool 'get_user' with 2 parameters: user_id, status")
        self.assertIs(self.registry.get("get_user"), entry)
        self.assertEqual(self.store.load("get_user").description, "Get a user by status")
        tool = self._server_tools()["get_user"]
        self.assertEqual(tool.description, "Get a user by status")
        self.assertEqual(set(tool.inputSchema["properties"]), {"user_id", "status"})

        asyncio.run(self.server.call_tool("get_user", {"user_id": 3}))
        self.executor.assert_called_once_with(
            "SELECT * FROM users WHERE id = $1 AND status = $2", [3, "active"]
        )

    def test_overwrite_of_new_name_creates(self):
        response = self._save_get_user(overwrite=True)
        self.assertTrue(response.text.startswith("Successfully created tool 'get_user'"))

    def test_invalid_schema_is_rejected_before_persisting(self):
        for schema in (None, "x", [], {"type": "invalid_type"}):
            with self.subTest(schema=schema):
                response = self._save_get_user(tool_name="bad_schema", parameter_schema=schema)
                self.assertEqual(
                    response.text,
                    "Error saving tool 'bad_schema' while validating parameter schema: "
                    "Invalid parameter_schema: must be a valid JSON Schema object",
                )
                self.assertIsNone(self.store.load("bad_schema"))
                self.assertNotIn("bad_schema", self.registry)

    def test_keyword_property_names_are_saved_and_callable(self):
        response = self._save_get_user(
            tool_name="orders_between",
            description="Orders in a date range",
            sql_query="SELECT * FROM orders WHERE created >= :from AND created < :to",
            parameter_schema={
                "type": "object",
                "properties": {"from": {"type": "string"}, "to": {"type": "string"}},
                "required": ["from", "to"],
            },
        )
        self.assertFalse(response.is_error, response.text)
        self.assertEqual(
            response.text, "Successfully created tool 'orders_between' with 2 parameters: from, to"
        )
        self.assertEqual(self.store.load("orders_between").parameter_order, ["from", "to"])

        result = asyncio.run(
            self.server.call_tool("orders_between", {"from": "2024-01-01", "to": "2024-02-01"})
        )
        self.assertFalse(result.isError)
        self.executor.assert_called_once_with(
            "SELECT * FROM orders WHERE created >= $1 AND created < $2", ["2024-01-01", "2024-02-01"]
        )

    def test_whole_float_is_accepted_for_integer_parameter(self):
        self._save_get_user()

        result = asyncio.run(self.server.call_tool("get_user", {"user_id": 7.0}))
        self.assertFalse(result.isError)
        self.executor.assert_called_once_with("SELECT * FROM users WHERE id = $1", [7])

        result = asyncio.run(self.server.call_tool("get_user", {"user_id": 7.5}))
        self.assertTrue(result.isError)
        self.assertIn("user_id: Expected integer, received float", result.content[0].text)

    def test_invalid_tool_name(self):
        for name in ("GetUser", "1user", "get-user", ""):
            with self.subTest(name=name):
                response = self._save_get_user(tool_name=name)
                self.assertTrue(response.is_error)
                self.assertIn("Tool name must be snake_case starting with a letter", response.text)
        self.assertEqual(self.store.load_all(), [])

    def test_empty_description_or_sql(self):
        self.assertIn("Description is required", self._save_get_user(description=" ").text)
        self.assertIn("SQL query is required", self._save_get_user(sql_query="").text)
        self.assertNotIn("get_user", self.registry)

    def test_builtin_names_cannot_be_saved(self):
        for spec in build_builtin_specs(self.lifecycle):
            self.registry.register(spec)

        response = self._save_get_user(tool_name="list_tables")
        self.assertIn("Tool with name 'list_tables' already exists", response.text)

        response = self._save_get_user(tool_name="list_tables", overwrite=True)
        self.assertIn("Cannot overwrite core tool 'list_tables'", response.text)
        self.assertIsNone(self.store.load("list_tables"))

    def test_persist_failure_registers_nothing(self):
        with mock.patch.object(self.store, "save", side_effect=ToolStoreError("disk full")):
            response = self._save_get_user()

        self.assertEqual(response.text, "Error saving tool 'get_user' while persisting tool to file: disk full")
        self.assertNotIn("get_user", self.registry)
        self.assertNotIn("get_user", self._server_tools())


class DeleteToolTests(LifecycleTestBase):
    def test_delete_twice(self):
        self._save_get_user()

        first = self.lifecycle.delete_tool("get_user")
        self.assertFalse(first.is_error)
        self.assertEqual(first.text, "Successfully deleted saved query 'get_user'")
        self.assertNotIn("get_user", self.registry)
        self.assertNotIn("get_user", self._server_tools())
        self.assertIsNone(self.store.load("get_user"))

        second = self.lifecycle.delete_tool("get_user")
        self.assertTrue(second.is_error)
        self.assertEqual(second.text, "Error deleting tool 'get_user': Saved query 'get_user' not found")

    def test_protected_names_are_always_rejected(self):
        for spec in build_builtin_specs(self.lifecycle, ("list_schemas",)):
            self.registry.register(spec)

        for name in sorted(PROTECTED_TOOLS):
            with self.subTest(name=name):
                response = self.lifecycle.delete_tool(name)
                self.assertEqual(response.text, f"Error deleting tool '{name}': Cannot delete core tool '{name}'")
        self.assertIn("list_schemas", self.registry)

    def test_remove_failure_leaves_everything_in_place(self):
        self._save_get_user()

        with mock.patch.object(self.server, "remove_tool", side_effect=RuntimeError("server busy")):
            response = self.lifecycle.delete_tool("get_user")

        self.assertEqual(
            response.text,
            "Error deleting tool 'get_user' while removing tool from MCP server: "
            "cannot remove tool 'get_user': server busy",
        )
        self.assertIn("get_user", self.registry)
        self.assertIsNotNone(self.store.load("get_user"))

    def test_file_delete_failure_is_reported(self):
        self._save_get_user()

        with mock.patch.object(self.store, "delete", side_effect=ToolStoreError("read-only file system")):
            response = self.lifecycle.delete_tool("get_user")

        self.assertEqual(
            response.text,
            "Error deleting tool 'get_user' while deleting tool file from storage: read-only file system",
        )
        self.assertNotIn("get_user", self.registry)
        self.assertIsNotNone(self.store.load("get_user"))


class LoadListShowTests(LifecycleTestBase):
    def _store_definition(self, name, description):
        self.store.save(
            ToolDefinition(
                name=name,
                description=description,
                sql_query="SELECT * FROM t WHERE id = :id",
                sql_prepared="SELECT * FROM t WHERE id = $1",
                parameter_schema={"type": "object", "properties": {"id": {"type": "integer"}}, "required": ["id"]},
                parameter_order=["id"],
            )
        )

    def test_load_saved_tools(self):
        self._store_definition("a_tool", "First")
        self._store_definition("b_tool", "Second")

        self.assertEqual(self.lifecycle.load_saved_tools(), 2)
        self.assertEqual(self.registry.names(kind=DYNAMIC), ["a_tool", "b_tool"])
        self.assertEqual(set(self._server_tools()), {"a_tool", "b_tool"})

    def test_load_saved_tools_with_keyword_property(self):
        self.store.save(
            ToolDefinition(
                name="in_list",
                description="Rows with ids in a list",
                sql_query="SELECT * FROM t WHERE id = ANY(:in)",
                sql_prepared="SELECT * FROM t WHERE id = ANY($1)",
                parameter_schema={
                    "type": "object",
                    "properties": {"in": {"type": "array", "items": {"type": "integer"}}},
                    "required": ["in"],
                },
                parameter_order=["in"],
            )
        )
        self._store_definition("ok_tool", "Plain")

        self.assertEqual(self.lifecycle.load_saved_tools(), 2)
        self.assertEqual(self.registry.names(kind=DYNAMIC), ["in_list", "ok_tool"])

        asyncio.run(self.server.call_tool("in_list", {"in": [1, 2]}))
        self.executor.assert_called_once_with("SELECT * FROM t WHERE id = ANY($1)", [[1, 2]])

    def test_list_saved_queries(self):
        self.assertEqual(self.lifecycle.list_saved_queries().text, "No saved queries found.")

        self._store_definition("a_tool", "First")
        self.lifecycle.load_saved_tools()
        self.assertEqual(self.lifecycle.list_saved_queries().text, "Found 1 saved query:\n\n- **a_tool**: First")

        self._store_definition("b_tool", "Second")
        self._save_get_user()
        self.store.delete("get_user")
        self.assertEqual(
            self.lifecycle.list_saved_queries().text,
            "Found 2 saved queries:\n\n- **a_tool**: First\n- **get_user**: No description",
        )

    def test_list_skips_builtins(self):
        for spec in build_builtin_specs(self.lifecycle):
            self.registry.register(spec)
        self.assertEqual(self.lifecycle.list_saved_queries().text, "No saved queries found.")

    def test_show_saved_query(self):
        self._save_get_user()

        response = self.lifecycle.show_saved_query("get_user")
        self.assertFalse(response.is_error)
        header = "Tool definition for 'get_user':\n\n```json\n"
        self.assertTrue(response.text.startswith(header))
        self.assertTrue(response.text.endswith("\n```"))
        record = json.loads(response.text[len(header) : -len("\n```")])
        self.assertEqual(record["sql_prepared"], "SELECT * FROM users WHERE id = $1")
        self.assertEqual(record["parameter_order"], ["user_id"])

    def test_show_missing(self):
        response = self.lifecycle.show_saved_query("nope")
        self.assertEqual(response.text, "Error showing saved query 'nope': Saved query 'nope' not found")

        self._save_get_user()
        self.store.delete("get_user")
        response = self.lifecycle.show_saved_query("get_user")
        self.assertEqual(
            response.text,
            "Error showing saved query 'get_user': Tool configuration for 'get_user' could not be loaded",
        )


if __name__ == "__main__":
    unittest.main()
