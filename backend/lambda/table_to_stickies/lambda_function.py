"""table_to_stickies/lambda_function.py

Lambda API handler that copies a Miro table into a grid of sticky notes placed
to the right of the table (header row first, one sticky per cell).

Routes (via API Gateway proxy):
    POST    /api/v1/table-to-stickies   — Body: {"boardId", "tableItemId"}
    OPTIONS /api/v1/table-to-stickies   — CORS preflight

Table geometry comes from the REST item read; rows come from the MCP
``table_list_rows`` tool. Sticky creation tries the nested ``data`` payload
first and the root-level payload second; a cell whose stickies both fail is
skipped and counted.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from miro_bridge import config, credentials
from miro_bridge.config import logger
from miro_bridge.credentials import CredentialError
from miro_bridge.http_utils import _error, _parse_body, _path_method, _preflight, _request_id, _response
from miro_bridge.mcp_client import TABLE_ROWS_TOOLS, McpError, McpSession, build_tool_args, open_session
from miro_bridge.miro_api import MiroApiError, MiroClient
from miro_bridge.observability import emit_structured_observability
from miro_bridge.table_rows import (
    TableRowsError,
    debug_counts,
    parse_table_list_rows,
    sticky_payloads,
    sticky_positions,
    table_frame,
)

REQUIRED_FIELDS = ("boardId", "tableItemId")


def _create_sticky(miro: MiroClient, board_id: str, text: str, x: float, y: float) -> Optional[str]:
    last_error = ""
    for payload in sticky_payloads(text, x, y):
        try:
            created = miro.create_sticky_note(board_id, payload)
        except MiroApiError as exc:
            last_error = str(exc)
            continue
        return str(created["id"]) if created.get("id") else None
    logger.warning("[WARNING] Sticky at (%.0f, %.0f) not created: %s", x, y, last_error[:300])
    return None


def _list_rows(session: McpSession, board_id: str, table_id: str):
    tool = session.tool(TABLE_ROWS_TOOLS)
    schema = tool.get("inputSchema") if tool else None
    args = build_tool_args(schema, board=board_id, table=table_id, limit=config.TABLE_ROWS_LIMIT)
    name = str(tool["name"]) if tool else TABLE_ROWS_TOOLS[0]
    return parse_table_list_rows(session.call_tool(name, args)), args


def _handle_table(body: Dict[str, Any]) -> Dict[str, Any]:
    missing = [name for name in REQUIRED_FIELDS if not str(body.get(name) or "").strip()]
    if missing:
        return _error(400, f"{' or '.join(missing)} missing.", missing=missing)

    token = credentials.miro_access_token()
    if not token:
        return _error(500, "Server misconfigured: MIRO_ACCESS_TOKEN is missing.")

    board_id = str(body["boardId"]).strip()
    table_id = str(body["tableItemId"]).strip()
    miro = MiroClient(token)

    frame = table_frame(miro.get_item(board_id, table_id))
    session = open_session(credentials.miro_mcp_access_token())
    try:
        data, args = _list_rows(session, board_id, table_id)
    except TableRowsError as exc:
        return _error(502, str(exc))
    if data.empty:
        return _error(502, "MCP table_list_rows returned no rows/columns.", debug=debug_counts(data, args))

    grid = data.grid()
    created_ids: List[str] = []
    for row, col, x, y in sticky_positions(frame, len(grid), len(data.columns)):
        sticky_id = _create_sticky(miro, board_id, grid[row][col], x, y)
        if sticky_id:
            created_ids.append(sticky_id)

    return _response(
        200,
        {
            "ok": True,
            "success": True,
            "boardId": board_id,
            "tableItemId": table_id,
            "columns": [c.title for c in data.columns],
            "rowCount": len(data.rows),
            "createdCount": len(created_ids),
            "failedCount": len(grid) * len(data.columns) - len(created_ids),
            "createdIds": created_ids,
        },
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict:
    """Main Lambda entry point."""
    method, path = _path_method(event)
    logger.info("table_to_stickies: %s %s", method, path)

    if method == "OPTIONS":
        return _preflight()
    if method != "POST":
        return _error(405, "Use POST.")

    body = _parse_body(event)
    if body is None:
        return _error(400, "Invalid JSON body.")

    started = time.perf_counter()
    try:
        response = _handle_table(body)
    except (MiroApiError, McpError) as exc:
        logger.warning("[WARNING] Upstream call failed: %s", exc)
        response = _error(502, str(exc))
    except CredentialError as exc:
        logger.error("Credential error: %s", exc)
        response = _error(500, str(exc))
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        response = _error(500, "Internal service error")

    emit_structured_observability(
        component="table_to_stickies",
        event="request_complete",
        request_id=_request_id(context),
        latency_ms=int((time.perf_counter() - started) * 1000),
        error_code=f"http_{response['statusCode']}" if response["statusCode"] >= 400 else "",
        extra={"status_code": response["statusCode"]},
    )
    return response
