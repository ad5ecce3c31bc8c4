"""miro_bridge.miro_api — Thin client for the Miro REST API v2.

Only the endpoints the bridge needs: item and document reads, paginated item
listing, creation of doc/sticky/text items, parent re-assignment and
deletion. Every non-2xx answer raises ``MiroApiError`` with status and body.
"""

from __future__ import annotations

import json
import time
import urllib.parse
from typing import Any, Dict, Iterator, Optional

from miro_bridge import config
from miro_bridge.http_client import bearer, http_request
from miro_bridge.observability import emit_structured_observability


class MiroApiError(RuntimeError):
    def __init__(self, method: str, url: str, status: int, body: str):
        self.method = method
        self.url = url
        self.status = status
        self.body = body
        super().__init__(f"Miro {method} {url} -> {status or 'network'}: {body}")


def _q(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


class MiroClient:
    """Miro REST client bound to one access token."""

    def __init__(self, token: str, base_url: Optional[str] = None):
        self.token = token
        self.base_url = (base_url or config.MIRO_API_BASE_URL).rstrip("/")

    def board_url(self, board_id: str, *parts: str) -> str:
        suffix = "/".join(_q(p) for p in parts)
        url = f"{self.base_url}/v2/boards/{_q(board_id)}"
        return f"{url}/{suffix}" if suffix else url

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"Accept": "application/json", **bearer(self.token)}
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload).encode("utf-8")
        started = time.perf_counter()
        result = http_request(method, url, headers=headers, data=data)
        emit_structured_observability(
            component="miro_api",
            event="rest_call",
            tool_name=f"{method} {urllib.parse.urlparse(url).path}",
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code="" if result.ok else (f"http_{result.status}" if result.status else "url_error"),
        )
        if not result.ok:
            raise MiroApiError(method, url, result.status, result.text(1000) or result.error)
        text = result.text()
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MiroApiError(method, url, result.status, f"invalid JSON response: {text[:200]}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_item(self, board_id: str, item_id: str) -> Dict[str, Any]:
        return self._request("GET", self.board_url(board_id, "items", item_id)) or {}

    def get_document(self, board_id: str, item_id: str) -> Dict[str, Any]:
        return self._request("GET", self.board_url(board_id, "documents", item_id)) or {}

    def get_doc(self, board_id: str, item_id: str) -> Dict[str, Any]:
        return self._request("GET", self.board_url(board_id, "docs", item_id)) or {}

    def iter_items(
        self,
        board_id: str,
        item_type: Optional[str] = None,
        *,
        limit: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield board items page by page, at most ``max_pages`` pages."""
        page_cap = max_pages or config.LOCATOR_MAX_PAGES
        cursor = ""
        seen_cursors = set()
        for _ in range(page_cap):
            query: Dict[str, Any] = {"limit": limit or config.LOCATOR_PAGE_SIZE}
            if item_type:
                query["type"] = item_type
            if cursor:
                query["cursor"] = cursor
            url = f"{self.board_url(board_id, 'items')}?{urllib.parse.urlencode(query)}"
            page = self._request("GET", url) or {}
            for item in page.get("data") or []:
                if isinstance(item, dict):
                    yield item
            cursor = str(page.get("cursor") or "")
            if not cursor or cursor in seen_cursors:
                return
            seen_cursors.add(cursor)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_doc(self, board_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self.board_url(board_id, "docs"), payload) or {}

    def create_sticky_note(self, board_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self.board_url(board_id, "sticky_notes"), payload) or {}

    def create_text(self, board_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self.board_url(board_id, "texts"), payload) or {}

    def set_parent(self, board_id: str, item_id: str, parent_id: str) -> Dict[str, Any]:
        return self._request(
            "PATCH",
            self.board_url(board_id, "items", item_id),
            {"parent": {"id": str(parent_id)}},
        ) or {}

    def delete_item(self, board_id: str, item_id: str) -> None:
        self._request("DELETE", self.board_url(board_id, "items", item_id))
