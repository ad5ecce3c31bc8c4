"""miro_bridge.mcp_client — Streamable-HTTP MCP client for the Miro MCP server.

One ``McpSession`` per request: ``initialize`` yields an ``Mcp-Session-Id``
that is replayed on every later call. The server may answer a POST with
plain JSON or with an SSE stream; both are reduced to the JSON-RPC message
carrying the request id.

Tool argument names are not fixed. ``build_tool_args`` maps logical fields
(board, doc, find, replace, ...) onto whichever property names the tool's
advertised input schema declares.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from miro_bridge import config
from miro_bridge.config import logger
from miro_bridge.http_client import bearer, http_request
from miro_bridge.observability import emit_structured_observability

# Logical field -> accepted schema property names, most specific first.
ARG_ALIASES: Dict[str, tuple] = {
    "board": ("board_id", "boardId", "board"),
    "doc": ("doc_id", "docId", "item_id", "itemId", "document_id", "documentId", "id"),
    "table": ("table_id", "tableId", "table", "item_id", "itemId", "id"),
    "find": ("find", "find_text", "findText", "old_text", "oldText", "search", "pattern"),
    "replace": ("replace", "replace_text", "replaceText", "new_text", "newText", "replacement"),
    "replace_all": ("replace_all", "replaceAll", "all"),
    "version": ("version", "expected_version", "expectedVersion", "base_version", "baseVersion", "revision", "etag"),
    "limit": ("limit", "pageSize", "page_size"),
}

# Shape used when a tool advertises no schema at all.
DEFAULT_ARG_NAMES: Dict[str, str] = {
    "board": "board_id",
    "doc": "doc_id",
    "table": "table_id",
    "find": "find",
    "replace": "replace",
    "replace_all": "replace_all",
    "version": "version",
    "limit": "limit",
}

DOC_GET_TOOLS = ("doc_get", "doc_read", "get_doc", "read_doc", "doc_get_content", "document_get")
DOC_UPDATE_TOOLS = ("doc_update", "doc_find_replace", "doc_find_and_replace", "update_doc", "doc_edit", "document_update")
TABLE_ROWS_TOOLS = ("table_list_rows",)


class McpError(RuntimeError):
    """Transport-level MCP failure (HTTP error, unparseable reply)."""


@dataclass
class ToolCallResult:
    ok: bool
    payload: Any = None
    text: str = ""
    error: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_sse_for_jsonrpc(sse_text: str, desired_id: Any = None) -> Optional[Dict[str, Any]]:
    """Return the SSE ``data:`` message with ``desired_id``, else the last one."""
    last: Optional[Dict[str, Any]] = None
    for line in str(sse_text or "").splitlines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        chunk = line[5:].strip()
        if not chunk:
            continue
        try:
            obj = json.loads(chunk)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        last = obj
        if desired_id is not None and obj.get("id") == desired_id:
            return obj
    return last


def schema_properties(input_schema: Optional[Dict[str, Any]]) -> List[str]:
    if not isinstance(input_schema, dict):
        return []
    props = input_schema.get("properties")
    return list(props.keys()) if isinstance(props, dict) else []


def build_tool_args(input_schema: Optional[Dict[str, Any]], **logical: Any) -> Dict[str, Any]:
    """Map logical argument values onto the tool's declared property names.

    ``None`` values are skipped. Without a schema the ``DEFAULT_ARG_NAMES``
    shape is used; with a schema, a logical field whose aliases are all
    undeclared is dropped.
    """
    props = schema_properties(input_schema)
    args: Dict[str, Any] = {}
    used: set = set()
    for name, value in logical.items():
        if value is None:
            continue
        if not props:
            args[DEFAULT_ARG_NAMES.get(name, name)] = value
            continue
        for alias in ARG_ALIASES.get(name, (name,)):
            if alias in props and alias not in used:
                args[alias] = value
                used.add(alias)
                break
    return args


def find_tool(tools: Sequence[Dict[str, Any]], names: Sequence[str]) -> Optional[Dict[str, Any]]:
    by_name = {str(t.get("name")): t for t in tools if isinstance(t, dict) and t.get("name")}
    for name in names:
        if name in by_name:
            return by_name[name]
    return None


def _structured_from_result(result: Dict[str, Any]) -> tuple:
    """Return ``(payload, text)`` from a CallToolResult."""
    content = result.get("content") if isinstance(result.get("content"), list) else []
    texts = [
        str(c.get("text"))
        for c in content
        if isinstance(c, dict) and c.get("type") == "text" and isinstance(c.get("text"), str)
    ]
    text = "\n".join(texts)
    structured = result.get("structuredContent")
    if isinstance(structured, dict):
        return structured, text
    for chunk in texts:
        try:
            parsed = json.loads(chunk)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed, text
    return None, text


def tool_call_result(response: Dict[str, Any]) -> ToolCallResult:
    """Normalize a ``tools/call`` JSON-RPC response."""
    if not isinstance(response, dict):
        return ToolCallResult(ok=False, error="empty MCP response")
    error = response.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else None
        return ToolCallResult(ok=False, error=str(message or json.dumps(error)), raw=response)
    result = response.get("result") if isinstance(response.get("result"), dict) else {}
    payload, text = _structured_from_result(result)
    if result.get("isError"):
        return ToolCallResult(ok=False, payload=payload, text=text, error=text or "tool reported isError", raw=response)
    return ToolCallResult(ok=True, payload=payload, text=text, raw=response)


class McpSession:
    """Stateful JSON-RPC session against one MCP endpoint."""

    def __init__(self, token: str, endpoint: Optional[str] = None, origin: Optional[str] = None):
        self.token = token
        self.endpoint = endpoint or config.MIRO_MCP_ENDPOINT
        self.origin = config.MIRO_MCP_ORIGIN if origin is None else origin
        self.session_id: Optional[str] = None
        self._next_id = 1
        self._tools: Optional[List[Dict[str, Any]]] = None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **bearer(self.token),
        }
        if self.origin:
            headers["Origin"] = self.origin
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    def _post(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        started = time.perf_counter()
        result = http_request(
            "POST",
            self.endpoint,
            headers=self._headers(),
            data=json.dumps(message).encode("utf-8"),
        )
        emit_structured_observability(
            component="mcp_client",
            event="jsonrpc_post",
            tool_name=str(message.get("method") or ""),
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code="" if result.ok else (f"http_{result.status}" if result.status else "url_error"),
        )
        new_session = result.headers.get("mcp-session-id")
        if new_session:
            self.session_id = new_session
        if not result.ok:
            raise McpError(f"MCP POST {self.endpoint} -> {result.describe()}")
        if "id" not in message or not result.body.strip():
            return None

        ct = result.content_type
        if "text/event-stream" in ct:
            parsed = parse_sse_for_jsonrpc(result.text(), message.get("id"))
            if parsed is None:
                raise McpError("MCP SSE response did not contain a JSON-RPC message.")
            return parsed
        try:
            parsed = result.json()
        except json.JSONDecodeError as exc:
            raise McpError(f"MCP unexpected content-type={ct or '(none)'}, body={result.text(200)}") from exc
        if not isinstance(parsed, dict):
            raise McpError(f"MCP reply is not a JSON-RPC object: {result.text(200)}")
        return parsed

    def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        message = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params or {}}
        self._next_id += 1
        return self._post(message) or {}

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._post({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def initialize(self) -> Dict[str, Any]:
        reply = self.request(
            "initialize",
            {
                "protocolVersion": config.MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": config.MCP_CLIENT_NAME, "version": config.MCP_CLIENT_VERSION},
            },
        )
        if reply.get("error"):
            raise McpError(f"MCP initialize failed: {json.dumps(reply['error'])[:300]}")
        try:
            self.notify("notifications/initialized")
        except McpError as exc:
            # Some servers reject the notification; the session still works.
            logger.warning("[WARNING] MCP initialized notification rejected: %s", exc)
        return reply.get("result") or {}

    def list_tools(self) -> List[Dict[str, Any]]:
        if self._tools is None:
            reply = self.request("tools/list")
            if reply.get("error"):
                raise McpError(f"MCP tools/list failed: {json.dumps(reply['error'])[:300]}")
            tools = (reply.get("result") or {}).get("tools")
            self._tools = [t for t in tools if isinstance(t, dict)] if isinstance(tools, list) else []
        return self._tools

    def tool(self, names: Sequence[str]) -> Optional[Dict[str, Any]]:
        return find_tool(self.list_tools(), names)

    def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolCallResult:
        reply = self.request("tools/call", {"name": name, "arguments": arguments})
        outcome = tool_call_result(reply)
        if not outcome.ok:
            logger.info("[INFO] MCP tool %s returned error: %s", name, outcome.error[:300])
        return outcome


def open_session(token: str) -> McpSession:
    session = McpSession(token)
    session.initialize()
    return session
