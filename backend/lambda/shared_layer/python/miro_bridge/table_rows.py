"""miro_bridge.table_rows — Table rows from MCP, laid out as a sticky grid."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from miro_bridge import config
from miro_bridge.mcp_client import ToolCallResult


class TableRowsError(RuntimeError):
    """The table tool reported an error."""


_COLUMN_KEYS = ("columns", "columnMetadata", "cols")
_ROW_KEYS = ("rows", "data", "items")
_CELL_TEXT_KEYS = ("text", "value", "label", "name", "title", "displayValue")


@dataclass
class TableColumn:
    id: str
    title: str


@dataclass
class TableData:
    columns: List[TableColumn] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.columns or not self.rows

    def grid(self) -> List[List[str]]:
        """Header row followed by every data row."""
        return [[c.title for c in self.columns]] + self.rows


def cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, dict):
        for key in _CELL_TEXT_KEYS:
            if isinstance(value.get(key), str):
                return value[key].strip()
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def normalize_columns(raw: Any) -> List[TableColumn]:
    columns: List[TableColumn] = []
    if not isinstance(raw, list):
        return columns
    for col in raw:
        if not col:
            continue
        if isinstance(col, str):
            columns.append(TableColumn(id=col, title=col))
        elif isinstance(col, dict):
            col_id = ""
            for key in ("id", "columnId", "key", "name", "title"):
                if col.get(key):
                    col_id = str(col[key])
                    break
            title = ""
            for key in ("title", "name", "label"):
                if col.get(key):
                    title = str(col[key])
                    break
            title = title or col_id or "Column"
            columns.append(TableColumn(id=col_id or title, title=title))
    return columns


def _keyed_cell(row: Dict[str, Any], column: TableColumn) -> Any:
    if column.id in row:
        return row[column.id]
    return row.get(column.title)


def normalize_rows(raw: Any, columns: List[TableColumn]) -> List[List[str]]:
    """Coerce each row to one string per column.

    Accepted row shapes: a plain list, ``{"cells": [...]}``, ``{"values":
    {columnId: ...}}`` or an object keyed directly by column id or title.
    Anything else is skipped.
    """
    rows: List[List[str]] = []
    if not isinstance(raw, list):
        return rows
    width = len(columns)
    for row in raw:
        if isinstance(row, list):
            cells = [row[i] if i < len(row) else None for i in range(width)]
        elif isinstance(row, dict) and isinstance(row.get("cells"), list):
            cells = [row["cells"][i] if i < len(row["cells"]) else None for i in range(width)]
        elif isinstance(row, dict) and isinstance(row.get("values"), dict):
            cells = [_keyed_cell(row["values"], c) for c in columns]
        elif isinstance(row, dict):
            cells = [_keyed_cell(row, c) for c in columns]
        else:
            continue
        rows.append([cell_to_text(v) for v in cells])
    return rows


def _first_key(payload: Dict[str, Any], keys) -> Any:
    for key in keys:
        if payload.get(key):
            return payload[key]
    return []


def parse_table_payload(payload: Any) -> TableData:
    if not isinstance(payload, dict):
        return TableData()
    columns = normalize_columns(_first_key(payload, _COLUMN_KEYS))
    rows = normalize_rows(_first_key(payload, _ROW_KEYS), columns)
    return TableData(columns=columns, rows=rows)


def parse_table_list_rows(outcome: ToolCallResult) -> TableData:
    """Read columns and rows from a ``table_list_rows`` tool result.

    Tool-level errors raise ``TableRowsError`` so the caller can report
    the tool's own message.
    """
    if not outcome.ok:
        raise TableRowsError(f"MCP tools/call error: {outcome.error}")
    return parse_table_payload(outcome.payload)


# ---------------------------------------------------------------------------
# Grid placement
# ---------------------------------------------------------------------------


@dataclass
class TableFrame:
    x: float
    y: float
    width: float
    height: float


def _num(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return float(fallback)
    return float(value)


def table_frame(item: Dict[str, Any]) -> TableFrame:
    position = item.get("position") if isinstance(item.get("position"), dict) else {}
    geometry = item.get("geometry") if isinstance(item.get("geometry"), dict) else {}
    return TableFrame(
        x=_num(position.get("x"), 0),
        y=_num(position.get("y"), 0),
        width=_num(geometry.get("width"), config.STICKY_GRID["default_table_width"]),
        height=_num(geometry.get("height"), config.STICKY_GRID["default_table_height"]),
    )


def sticky_positions(frame: TableFrame, row_count: int, column_count: int) -> List[Tuple[int, int, float, float]]:
    """``(row, column, x, y)`` centres for a grid right of the table.

    The first column sits ``offset_x`` px beyond the table's right edge and
    the grid is centred vertically on the table.
    """
    grid = config.STICKY_GRID
    step_x = grid["sticky_width"] + grid["gap_x"]
    step_y = grid["sticky_height"] + grid["gap_y"]
    start_x = frame.x + frame.width / 2 + grid["offset_x"] + grid["sticky_width"] / 2
    grid_height = (row_count - 1) * step_y if row_count > 1 else 0
    start_y = frame.y - grid_height / 2
    return [
        (r, c, start_x + c * step_x, start_y + r * step_y)
        for r in range(row_count)
        for c in range(column_count)
    ]


def sticky_payloads(text: str, x: float, y: float) -> List[Dict[str, Any]]:
    """Nested ``data`` shape first, then the root-level shape."""
    content = str(text or "").strip() or " "
    position = {"x": x, "y": y, "origin": "center"}
    return [
        {"data": {"content": content, "shape": "square"}, "position": position},
        {"content": content, "shape": "square", "position": position},
    ]


def debug_counts(data: TableData, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"columnsCount": len(data.columns), "rowsCount": len(data.rows), "args": args or {}}
