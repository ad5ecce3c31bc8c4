"""test_mcp_client.py — JSON-RPC session, SSE parsing and argument mapping."""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from miro_bridge import mcp_client
from miro_bridge.http_client import HttpResult
from miro_bridge.mcp_client import (
    DOC_UPDATE_TOOLS,
    McpError,
    McpSession,
    build_tool_args,
    find_tool,
    parse_sse_for_jsonrpc,
    tool_call_result,
)


def _json_reply(payload, session_id=None, status=200):
    headers = {"content-type": "application/json"}
    if session_id:
        headers["mcp-session-id"] = session_id
    return HttpResult(status=status, headers=headers, body=json.dumps(payload).encode("utf-8"))


def _sse_reply(*messages):
    body = "".join(f"event: message\ndata: {json.dumps(m)}\n\n" for m in messages)
    return HttpResult(status=200, headers={"content-type": "text/event-stream"}, body=body.encode("utf-8"))


class SseTests(unittest.TestCase):
    def test_picks_message_with_requested_id(self):
        text = 'data: {"jsonrpc":"2.0","method":"notifications/progress"}\n\ndata: {"jsonrpc":"2.0","id":3,"result":{}}\n'
        self.assertEqual(parse_sse_for_jsonrpc(text, 3)["id"], 3)

    def test_falls_back_to_last_message(self):
        text = 'data: {"id":1}\n\ndata: not json\n\ndata: {"id":2}\n'
        self.assertEqual(parse_sse_for_jsonrpc(text, 9), {"id": 2})
        self.assertIsNone(parse_sse_for_jsonrpc(": keep-alive\n", 1))


class ToolArgTests(unittest.TestCase):
    def test_maps_to_declared_aliases(self):
        schema = {"properties": {"boardId": {}, "item_id": {}, "old_text": {}, "new_text": {}, "revision": {}}}
        args = build_tool_args(schema, board="b1", doc="d1", find="a", replace="b", replace_all=False, version=4)
        self.assertEqual(args, {"boardId": "b1", "item_id": "d1", "old_text": "a", "new_text": "b", "revision": 4})

    def test_default_shape_without_schema(self):
        args = build_tool_args(None, board="b1", table="t1", limit=100, version=None)
        self.assertEqual(args, {"board_id": "b1", "table_id": "t1", "limit": 100})

    def test_alias_is_used_once(self):
        schema = {"properties": {"board_id": {}, "id": {}}}
        self.assertEqual(build_tool_args(schema, board="b1", doc="d1"), {"board_id": "b1", "id": "d1"})

    def test_find_tool_priority(self):
        tools = [{"name": "doc_find_replace"}, {"name": "doc_update"}, {"name": "other"}]
        self.assertEqual(find_tool(tools, DOC_UPDATE_TOOLS)["name"], "doc_update")
        self.assertIsNone(find_tool(tools, ("missing",)))


class ToolCallResultTests(unittest.TestCase):
    def test_structured_content(self):
        outcome = tool_call_result({"result": {"structuredContent": {"rows": []}, "content": []}})
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.payload, {"rows": []})

    def test_json_in_text_content(self):
        outcome = tool_call_result({"result": {"content": [{"type": "text", "text": '{"content": "# T"}'}]}})
        self.assertEqual(outcome.payload, {"content": "# T"})
        self.assertEqual(outcome.text, '{"content": "# T"}')

    def test_is_error(self):
        outcome = tool_call_result({"result": {"isError": True, "content": [{"type": "text", "text": "stale version"}]}})
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "stale version")

    def test_jsonrpc_error(self):
        outcome = tool_call_result({"error": {"code": -32602, "message": "Invalid params"}})
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "Invalid params")


class SessionTests(unittest.TestCase):
    def test_initialize_then_reuse_session_id(self):
        replies = [
            _json_reply({"jsonrpc": "2.0", "id": 1, "result": {"serverInfo": {"name": "miro"}}}, session_id="sess-1"),
            HttpResult(status=202, headers={}, body=b""),
            _sse_reply({"jsonrpc": "2.0", "id": 2, "result": {"tools": [{"name": "doc_get"}, "junk"]}}),
        ]
        with patch.object(mcp_client, "http_request", side_effect=replies) as mock_http:
            session = McpSession("tok", endpoint="https://mcp.example/", origin="https://app.example")
            info = session.initialize()
            tools = session.list_tools()
            session.list_tools()

        self.assertEqual(info["serverInfo"]["name"], "miro")
        self.assertEqual(tools, [{"name": "doc_get"}])
        self.assertEqual(mock_http.call_count, 3)
        first_headers = mock_http.call_args_list[0][1]["headers"]
        self.assertNotIn("Mcp-Session-Id", first_headers)
        self.assertEqual(first_headers["Origin"], "https://app.example")
        self.assertEqual(first_headers["Authorization"], "Bearer tok")
        for call in mock_http.call_args_list[1:]:
            self.assertEqual(call[1]["headers"]["Mcp-Session-Id"], "sess-1")
        notification = json.loads(mock_http.call_args_list[1][1]["data"])
        self.assertEqual(notification["method"], "notifications/initialized")
        self.assertNotIn("id", notification)

    def test_rejected_notification_is_tolerated(self):
        replies = [
            _json_reply({"jsonrpc": "2.0", "id": 1, "result": {}}, session_id="s"),
            HttpResult(status=400, headers={}, body=b"bad"),
        ]
        with patch.object(mcp_client, "http_request", side_effect=replies):
            self.assertEqual(McpSession("tok").initialize(), {})

    def test_http_error_raises(self):
        with patch.object(mcp_client, "http_request", return_value=HttpResult(status=401, body=b"no")):
            with self.assertRaises(McpError) as ctx:
                McpSession("tok").initialize()
        self.assertIn("http_401", str(ctx.exception))

    def test_call_tool_returns_result_object(self):
        reply = _json_reply({"jsonrpc": "2.0", "id": 1, "result": {"isError": True, "content": [{"type": "text", "text": "conflict"}]}})
        with patch.object(mcp_client, "http_request", return_value=reply) as mock_http:
            outcome = McpSession("tok").call_tool("doc_update", {"find": "a"})
        self.assertFalse(outcome.ok)
        sent = json.loads(mock_http.call_args[1]["data"])
        self.assertEqual(sent["method"], "tools/call")
        self.assertEqual(sent["params"], {"name": "doc_update", "arguments": {"find": "a"}})


if __name__ == "__main__":
    unittest.main()
