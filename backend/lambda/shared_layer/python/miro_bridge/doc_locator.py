"""miro_bridge.doc_locator — Find the placeholder doc item a result belongs in.

Boards may carry several doc items with the same title (earlier partial runs
leave duplicates behind). Selection rule for an exact title match:

    1. the first match that is still a placeholder wins immediately;
    2. otherwise the match with the largest width * height;
    3. no match -> None (the caller reports "target not found").
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from miro_bridge import config
from miro_bridge.config import logger
from miro_bridge.miro_api import MiroApiError, MiroClient

DOC_ITEM_TYPE = "doc_format"

_BLOCK_BREAK_RE = re.compile(r"<\s*(br\s*/?|/p|/h[1-6]|/li|/div|/ul|/ol|/blockquote|/pre)\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_HEADING_RE = re.compile(r"^#{1,6}\s*")


@dataclass
class BoardDocumentItem:
    id: str
    x: float = 0.0
    y: float = 0.0
    origin: str = "center"
    width: Optional[float] = None
    height: Optional[float] = None
    parent_id: Optional[str] = None
    content: str = ""
    content_type: str = "markdown"
    title: str = ""
    title_source: str = "content"

    @property
    def area(self) -> float:
        if self.width is None or self.height is None:
            return 0.0
        return float(self.width) * float(self.height)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "position": {"x": self.x, "y": self.y, "origin": self.origin},
            "geometry": {"width": self.width, "height": self.height},
            "parentId": self.parent_id,
        }


def strip_markup(content: str) -> str:
    text = _BLOCK_BREAK_RE.sub("\n", str(content or ""))
    text = _TAG_RE.sub("", text)
    return html.unescape(text)


def content_lines(content: str) -> List[str]:
    return [line.strip() for line in strip_markup(content).splitlines() if line.strip()]


def strip_heading(line: str) -> str:
    return _HEADING_RE.sub("", str(line or "").strip()).strip()


def title_from_content(content: str) -> str:
    lines = content_lines(content)
    return strip_heading(lines[0]) if lines else ""


def is_effectively_empty_doc(content: str, title: str) -> bool:
    """True when the content says nothing beyond its own title."""
    lines = content_lines(content)
    if not lines:
        return True
    if len(lines) > 1:
        return False
    wanted = str(title or "").strip()
    if not wanted:
        return False
    only = lines[0]
    return only == wanted or strip_heading(only) == wanted


def _num(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def doc_item_from_api(raw: Dict[str, Any]) -> BoardDocumentItem:
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    position = raw.get("position") if isinstance(raw.get("position"), dict) else {}
    geometry = raw.get("geometry") if isinstance(raw.get("geometry"), dict) else {}
    parent = raw.get("parent") if isinstance(raw.get("parent"), dict) else {}

    content = data.get("content")
    content = content if isinstance(content, str) else ""
    field_title = data.get("title")
    if isinstance(field_title, str) and field_title.strip():
        title, title_source = strip_markup(field_title).strip(), "field"
    else:
        title, title_source = title_from_content(content), "content"

    return BoardDocumentItem(
        id=str(raw.get("id") or ""),
        x=_num(position.get("x")) or 0.0,
        y=_num(position.get("y")) or 0.0,
        origin=str(position.get("origin") or "center"),
        width=_num(geometry.get("width")),
        height=_num(geometry.get("height")),
        parent_id=str(parent["id"]) if parent.get("id") else None,
        content=content,
        content_type=str(data.get("contentType") or "markdown").lower(),
        title=title,
        title_source=title_source,
    )


def derive_doc_title(raw: Dict[str, Any]) -> str:
    return doc_item_from_api(raw).title


def _needs_detail(raw: Dict[str, Any]) -> bool:
    data = raw.get("data")
    return not isinstance(data, dict) or not isinstance(data.get("content"), str)


def _with_detail(miro: MiroClient, board_id: str, raw: Dict[str, Any]) -> Dict[str, Any]:
    try:
        detail = miro.get_doc(board_id, str(raw.get("id") or ""))
    except MiroApiError as exc:
        logger.warning("[WARNING] Doc detail read failed for %s: %s", raw.get("id"), exc)
        return raw
    merged = dict(raw)
    for key, value in detail.items():
        if value not in (None, {}, ""):
            merged[key] = value
    return merged


def find_doc_by_title(
    miro: MiroClient,
    board_id: str,
    title: str,
    *,
    item_type: str = DOC_ITEM_TYPE,
    max_pages: Optional[int] = None,
) -> Optional[BoardDocumentItem]:
    wanted = str(title or "").strip()
    if not wanted:
        return None

    best: Optional[BoardDocumentItem] = None
    scanned = 0
    matches = 0
    for raw in miro.iter_items(board_id, item_type, max_pages=max_pages or config.LOCATOR_MAX_PAGES):
        scanned += 1
        if _needs_detail(raw):
            raw = _with_detail(miro, board_id, raw)
        item = doc_item_from_api(raw)
        if not item.id or item.title != wanted:
            continue
        matches += 1
        if is_effectively_empty_doc(item.content, wanted):
            logger.info("[INFO] Placeholder doc %s matched title %r after %d item(s)", item.id, wanted, scanned)
            return item
        if best is None or item.area > best.area:
            best = item

    logger.info(
        "[INFO] Doc locator scanned %d item(s), %d title match(es), selected=%s",
        scanned, matches, best.id if best else None,
    )
    return best
