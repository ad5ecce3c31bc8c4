"""miro_bridge.doc_reconcile — Write generated content into a located doc item.

Two strategies, chosen by the write capability at hand:

``reconcile_by_recreate`` (REST, no in-place content update exists)
    Create a replacement doc item, trying payload variants in order, then
    re-parent it and delete the original. The original is only deleted once
    its replacement exists. If no variant is accepted, the answer is placed
    in a plain text item next to the original instead.

``reconcile_by_find_replace`` (MCP, versioned in-place update)
    Read content and version, then find/replace with the version as an
    optimistic-concurrency token: the whole document first, then (for
    placeholders only) progressively looser anchors. A version conflict ends
    the run immediately. There is no fallback; exhaustion is a failure.

Every variant tried is recorded as a ``ReconciliationAttempt``.
"""

from __future__ import annotations

import html
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from miro_bridge.config import logger
from miro_bridge.doc_locator import (
    BoardDocumentItem,
    content_lines,
    is_effectively_empty_doc,
    strip_heading,
)
from miro_bridge.mcp_client import (
    DOC_GET_TOOLS,
    DOC_UPDATE_TOOLS,
    McpError,
    McpSession,
    ToolCallResult,
    build_tool_args,
)
from miro_bridge.miro_api import MiroApiError, MiroClient
from miro_bridge.observability import emit_structured_observability

STRATEGY_REST = "rest_recreate"
STRATEGY_MCP = "mcp_find_replace"

_CONFLICT_RE = re.compile(
    r"version (?:mismatch|conflict)|conflict|stale|precondition failed|etag mismatch|modified since",
    re.IGNORECASE,
)
_CONTENT_KEYS = ("content", "markdown", "text", "body", "html")
_VERSION_KEYS = ("version", "revision", "etag", "versionId", "version_id")
_NESTED_KEYS = ("doc", "document", "data", "item")
_COUNT_KEYS = ("replaced", "replacements", "replacedCount", "replaced_count", "count", "matches", "occurrences")


@dataclass
class ReconciliationAttempt:
    strategy: str
    variant: str
    ok: bool
    detail: str = ""
    item_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationResult:
    updated: bool
    strategy: str
    item_id: Optional[str] = None
    noop: bool = False
    conflict: bool = False
    original_deleted: bool = False
    fallback_item_id: Optional[str] = None
    attempts: List[ReconciliationAttempt] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "strategy": self.strategy,
            "itemId": self.item_id,
            "noop": self.noop,
            "conflict": self.conflict,
            "originalDeleted": self.original_deleted,
            "fallbackItemId": self.fallback_item_id,
            "attempts": [a.as_dict() for a in self.attempts],
        }


# ---------------------------------------------------------------------------
# Content shaping
# ---------------------------------------------------------------------------


def heading_line(title: str, current_content: str = "") -> str:
    """Reuse the document's own heading line for ``title`` if it has one."""
    for raw in str(current_content or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#") and strip_heading(line) == title:
            return line
        break
    return f"# {title}" if title else ""


def _starts_with_title(body: str, title_line: str) -> bool:
    lines = content_lines(body)
    return bool(lines) and lines[0].startswith("#") and strip_heading(lines[0]) == strip_heading(title_line)


def build_desired_content(new_content: str, title_line: str) -> str:
    body = str(new_content or "").strip()
    if not title_line:
        return body
    if _starts_with_title(body, title_line):
        return body
    return f"{title_line}\n\n{body}" if body else title_line


def body_without_title(new_content: str, title: str) -> str:
    body = str(new_content or "").strip()
    lines = body.splitlines()
    if lines and lines[0].strip().startswith("#") and strip_heading(lines[0]) == title:
        return "\n".join(lines[1:]).strip()
    return body


def _inline_html(text: str) -> str:
    escaped = html.escape(text, quote=False)
    return re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", escaped)


def markdown_to_simple_html(markdown: str) -> str:
    """Headings, bullet/numbered lists and paragraphs; everything else is text."""
    out: List[str] = []
    list_tag: Optional[str] = None

    def close_list() -> None:
        nonlocal list_tag
        if list_tag:
            out.append(f"</{list_tag}>")
            list_tag = None

    for raw in str(markdown or "").splitlines():
        line = raw.strip()
        if not line:
            close_list()
            continue
        heading = re.match(r"^(#{1,6})\s+(.*)$", line)
        bullet = re.match(r"^[-*+]\s+(.*)$", line)
        numbered = re.match(r"^\d+[.)]\s+(.*)$", line)
        if heading:
            close_list()
            level = min(len(heading.group(1)), 3)
            out.append(f"<h{level}>{_inline_html(heading.group(2))}</h{level}>")
        elif bullet or numbered:
            tag = "ul" if bullet else "ol"
            if list_tag != tag:
                close_list()
                out.append(f"<{tag}>")
                list_tag = tag
            out.append(f"<li>{_inline_html((bullet or numbered).group(1))}</li>")
        else:
            close_list()
            out.append(f"<p>{_inline_html(line)}</p>")
    close_list()
    return "".join(out)


# ---------------------------------------------------------------------------
# Recreate-and-replace (REST)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateVariant:
    content_format: str
    title_mode: str
    carry_geometry: bool

    @property
    def name(self) -> str:
        geometry = "geometry" if self.carry_geometry else "no-geometry"
        return f"{self.content_format}/{self.title_mode}/{geometry}"


def recreate_variants(target: BoardDocumentItem) -> List[CreateVariant]:
    heading = [
        CreateVariant("markdown", "heading", True),
        CreateVariant("markdown", "heading", False),
        CreateVariant("html", "heading", True),
        CreateVariant("html", "heading", False),
    ]
    title_field = [
        CreateVariant("markdown", "title-field", True),
        CreateVariant("markdown", "title-field", False),
    ]
    if target.title_source == "field":
        return title_field + heading
    return heading + title_field


def build_create_payload(
    target: BoardDocumentItem,
    variant: CreateVariant,
    new_content: str,
    title: str,
    title_line: str,
) -> Dict[str, Any]:
    if variant.title_mode == "heading":
        text = build_desired_content(new_content, title_line)
    else:
        text = body_without_title(new_content, title)
    content = text if variant.content_format == "markdown" else markdown_to_simple_html(text)
    data: Dict[str, Any] = {"contentType": variant.content_format, "content": content}
    if variant.title_mode == "title-field":
        data["title"] = title
    payload: Dict[str, Any] = {
        "data": data,
        "position": {"x": target.x, "y": target.y, "origin": target.origin or "center"},
    }
    if variant.carry_geometry and target.width:
        payload["geometry"] = {"width": target.width}
    return payload


def _rest_attempt(variant: str, call: Callable[[], Any]) -> Tuple[ReconciliationAttempt, Any]:
    try:
        response = call()
    except MiroApiError as exc:
        return ReconciliationAttempt(STRATEGY_REST, variant, False, str(exc)[:600]), None
    item_id = str(response.get("id")) if isinstance(response, dict) and response.get("id") else None
    return ReconciliationAttempt(STRATEGY_REST, variant, True, item_id=item_id), response


def fallback_text_payload(target: BoardDocumentItem, text: str) -> Dict[str, Any]:
    escaped = html.escape(str(text or "").strip(), quote=False).replace("\n", "<br>")
    offset = (target.height or 0.0) / 2 + 120
    return {
        "data": {"content": escaped or " "},
        "position": {"x": target.x, "y": target.y + offset, "origin": target.origin or "center"},
    }


def reconcile_by_recreate(
    miro: MiroClient,
    board_id: str,
    target: BoardDocumentItem,
    new_content: str,
    title_line: Optional[str] = None,
    title: Optional[str] = None,
) -> ReconciliationResult:
    title = title or target.title
    title_line = title_line or heading_line(title, target.content)
    result = ReconciliationResult(updated=False, strategy=STRATEGY_REST)

    created_id: Optional[str] = None
    for variant in recreate_variants(target):
        payload = build_create_payload(target, variant, new_content, title, title_line)
        attempt, _ = _rest_attempt(f"create:{variant.name}", lambda: miro.create_doc(board_id, payload))
        if attempt.ok and not attempt.item_id:
            attempt.ok = False
            attempt.detail = "create returned no item id"
        result.attempts.append(attempt)
        if attempt.ok:
            created_id = attempt.item_id
            break

    if created_id is None:
        desired = build_desired_content(new_content, title_line)
        attempt, _ = _rest_attempt(
            "fallback:text",
            lambda: miro.create_text(board_id, fallback_text_payload(target, desired)),
        )
        result.attempts.append(attempt)
        result.fallback_item_id = attempt.item_id if attempt.ok else None
        logger.warning(
            "[WARNING] Doc %s not replaced after %d create variant(s); fallback text item=%s",
            target.id, len(result.attempts) - 1, result.fallback_item_id,
        )
        _emit(result, target)
        return result

    result.updated = True
    result.item_id = created_id

    if target.parent_id:
        attempt, _ = _rest_attempt(
            "reparent",
            lambda: miro.set_parent(board_id, created_id, target.parent_id),
        )
        attempt.item_id = created_id
        result.attempts.append(attempt)
        if not attempt.ok:
            logger.warning("[WARNING] Re-parenting %s under %s failed: %s", created_id, target.parent_id, attempt.detail)

    attempt, _ = _rest_attempt("delete-original", lambda: miro.delete_item(board_id, target.id))
    attempt.item_id = target.id
    result.attempts.append(attempt)
    result.original_deleted = attempt.ok
    if not attempt.ok:
        logger.warning("[WARNING] Original doc %s kept after replacement %s: %s", target.id, created_id, attempt.detail)

    _emit(result, target)
    return result


def create_standalone_doc(
    miro: MiroClient,
    board_id: str,
    new_content: str,
    title: str,
    x: float,
    y: float,
) -> ReconciliationResult:
    """Create a fresh doc item at ``(x, y)`` without touching any existing one."""
    result = ReconciliationResult(updated=False, strategy="rest_create")
    payload = {
        "data": {"contentType": "markdown", "content": build_desired_content(new_content, f"# {title}")},
        "position": {"x": x, "y": y, "origin": "center"},
    }
    attempt, _ = _rest_attempt("create:standalone", lambda: miro.create_doc(board_id, payload))
    if attempt.ok and not attempt.item_id:
        attempt.ok = False
        attempt.detail = "create returned no item id"
    result.attempts.append(attempt)
    result.updated = attempt.ok
    result.item_id = attempt.item_id if attempt.ok else None
    return result


# ---------------------------------------------------------------------------
# Versioned find/replace (MCP)
# ---------------------------------------------------------------------------


@dataclass
class DocToolSet:
    get_tool: Dict[str, Any]
    update_tool: Dict[str, Any]

    @property
    def get_name(self) -> str:
        return str(self.get_tool.get("name"))

    @property
    def update_name(self) -> str:
        return str(self.update_tool.get("name"))

    @classmethod
    def discover(cls, session: McpSession) -> Optional["DocToolSet"]:
        get_tool = session.tool(DOC_GET_TOOLS)
        update_tool = session.tool(DOC_UPDATE_TOOLS)
        if not get_tool or not update_tool:
            return None
        return cls(get_tool=get_tool, update_tool=update_tool)


@dataclass
class DocSnapshot:
    content: str
    version: Any = None


def _first_present(payload: Dict[str, Any], keys) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def parse_doc_snapshot(outcome: ToolCallResult) -> Optional[DocSnapshot]:
    payload = outcome.payload
    if isinstance(payload, dict):
        scopes = [payload] + [payload[k] for k in _NESTED_KEYS if isinstance(payload.get(k), dict)]
        content = None
        version = None
        for scope in scopes:
            if content is None:
                value = _first_present(scope, _CONTENT_KEYS)
                content = value if isinstance(value, str) else None
            if version is None:
                version = _first_present(scope, _VERSION_KEYS)
        if content is None:
            return None
        return DocSnapshot(content=content, version=version)
    if outcome.text:
        return DocSnapshot(content=outcome.text)
    return None


def _reports_no_change(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if payload.get("success") is False or payload.get("ok") is False:
        return True
    count = _first_present(payload, _COUNT_KEYS)
    return isinstance(count, int) and not isinstance(count, bool) and count == 0


def _read_doc(session: McpSession, tools: DocToolSet, board_id: str, doc_id: str) -> Tuple[Optional[DocSnapshot], str]:
    args = build_tool_args(tools.get_tool.get("inputSchema"), board=board_id, doc=doc_id)
    outcome = session.call_tool(tools.get_name, args)
    if not outcome.ok:
        return None, outcome.error
    snapshot = parse_doc_snapshot(outcome)
    if snapshot is None:
        return None, f"{tools.get_name} returned no document content"
    return snapshot, ""


def find_replace_plan(current: str, desired: str, title: str, title_line: str) -> List[Tuple[str, str, str]]:
    """Ordered ``(variant, find, replace)`` triples.

    The whole-document step is always first, even for an empty document where
    it sends ``find=""``. Empty or repeated finds among the looser placeholder
    variants are dropped.
    """
    ordered = [("whole-document", current, desired)]
    if not is_effectively_empty_doc(current, title):
        return ordered

    body = body_without_title(desired, title)
    first_line = next((line.strip() for line in current.splitlines() if line.strip()), "")
    looser = [
        ("trimmed", current.strip(), desired),
        ("heading-line", first_line or title_line, desired),
        ("bare-title", title, f"{title}\n\n{body}" if body else title),
    ]
    seen = {current}
    for variant, find, replace in looser:
        if not find or find in seen:
            continue
        seen.add(find)
        ordered.append((variant, find, replace))
    return ordered


def reconcile_by_find_replace(
    session: McpSession,
    board_id: str,
    target: BoardDocumentItem,
    new_content: str,
    title_line: Optional[str] = None,
    title: Optional[str] = None,
    tools: Optional[DocToolSet] = None,
) -> ReconciliationResult:
    title = title or target.title
    result = ReconciliationResult(updated=False, strategy=STRATEGY_MCP, item_id=target.id)

    try:
        tools = tools or DocToolSet.discover(session)
        if tools is None:
            result.attempts.append(
                ReconciliationAttempt(STRATEGY_MCP, "discover", False, "doc get/update tools not advertised")
            )
            return result

        snapshot, error = _read_doc(session, tools, board_id, target.id)
        if snapshot is None:
            result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, "read", False, error[:600]))
            return result

        current = snapshot.content
        title_line = title_line or heading_line(title, current)
        desired = build_desired_content(new_content, title_line)
        if current.strip() == desired.strip():
            result.updated = True
            result.noop = True
            result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, "noop", True, "content already current"))
            _emit(result, target)
            return result

        schema = tools.update_tool.get("inputSchema")
        for variant, find, replace in find_replace_plan(current, desired, title, title_line):
            args = build_tool_args(
                schema,
                board=board_id,
                doc=target.id,
                find=find,
                replace=replace,
                replace_all=False,
                version=snapshot.version,
            )
            outcome = session.call_tool(tools.update_name, args)
            if not outcome.ok:
                if _CONFLICT_RE.search(outcome.error or ""):
                    result.conflict = True
                    result.attempts.append(
                        ReconciliationAttempt(STRATEGY_MCP, variant, False, f"version conflict: {outcome.error[:500]}")
                    )
                    _emit(result, target)
                    return result
                result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, variant, False, outcome.error[:600]))
                continue
            if _reports_no_change(outcome.payload):
                result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, variant, False, "no occurrence replaced"))
                continue

            after, read_error = _read_doc(session, tools, board_id, target.id)
            if after is not None and after.content == current:
                result.attempts.append(
                    ReconciliationAttempt(STRATEGY_MCP, variant, False, "update reported success but content unchanged")
                )
                continue
            detail = "verified" if after is not None else f"unverified: {read_error[:200]}"
            result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, variant, True, detail, item_id=target.id))
            result.updated = True
            _emit(result, target)
            return result
    except McpError as exc:
        result.attempts.append(ReconciliationAttempt(STRATEGY_MCP, "transport", False, str(exc)[:600]))

    _emit(result, target)
    return result


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------


def reconcile(
    target: BoardDocumentItem,
    new_content: str,
    title_line: Optional[str] = None,
    *,
    miro: MiroClient,
    board_id: str,
    session: Optional[McpSession] = None,
    strategy: str = "auto",
    title: Optional[str] = None,
) -> ReconciliationResult:
    """Write ``new_content`` into ``target`` with the selected strategy.

    ``auto`` uses the versioned path when an MCP session advertises both doc
    tools, else recreate-and-replace. ``mcp`` without a session is an error.
    """
    if strategy == "rest":
        return reconcile_by_recreate(miro, board_id, target, new_content, title_line, title)
    if strategy == "mcp":
        if session is None:
            raise ValueError("MCP strategy requires an MCP session")
        return reconcile_by_find_replace(session, board_id, target, new_content, title_line, title)

    tools = None
    if session is not None:
        try:
            tools = DocToolSet.discover(session)
        except McpError as exc:
            logger.warning("[WARNING] MCP tool discovery failed, using REST recreate: %s", exc)
    if tools is not None:
        return reconcile_by_find_replace(session, board_id, target, new_content, title_line, title, tools=tools)
    return reconcile_by_recreate(miro, board_id, target, new_content, title_line, title)


def _emit(result: ReconciliationResult, target: BoardDocumentItem) -> None:
    emit_structured_observability(
        component="doc_reconcile",
        event="reconcile_outcome",
        tool_name=result.strategy,
        error_code="" if result.updated else ("conflict" if result.conflict else "exhausted"),
        extra={
            "target_id": target.id,
            "item_id": result.item_id,
            "noop": result.noop,
            "attempt_count": len(result.attempts),
            "fallback_item_id": result.fallback_item_id,
        },
    )
