"""analyze_pdf/lambda_function.py

Lambda API handler that analyzes a PDF attached to a Miro board and writes the
answer back onto the board.

Routes (via API Gateway proxy):
    POST    /api/v1/analyze-pdf   — Analyze a board document item
    OPTIONS /api/v1/analyze-pdf   — CORS preflight

Request body:
    boardId      required
    itemId       required, must be a ``document`` item (the PDF)
    openaiKey    optional when OPENAI_API_KEY(_SECRET_ID) is configured
    model        default OPENAI_DEFAULT_MODEL
    prompt       default: prompt template from configuration
    targetTitle  title of the placeholder doc to fill, default DEFAULT_TARGET_TITLE
    writeMode    auto | mcp | rest | new

Flow:
    validate -> read source item (type check) -> read document detail ->
    resolve PDF bytes -> upload to OpenAI -> analyze -> locate target doc ->
    reconcile content -> respond.

Environment variables:
    MIRO_ACCESS_TOKEN / MIRO_ACCESS_TOKEN_SECRET_ID
    MIRO_MCP_ACCESS_TOKEN, MIRO_MCP_ENDPOINT
    OPENAI_API_KEY / OPENAI_API_KEY_SECRET_ID, OPENAI_DEFAULT_MODEL
    PROMPT_TEMPLATE_PARAMETER, DEFAULT_TARGET_TITLE, DEFAULT_WRITE_MODE
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from miro_bridge import config, credentials
from miro_bridge.binary_resolver import ResolutionError, download_url_from_document, resolve_binary
from miro_bridge.config import logger
from miro_bridge.credentials import CredentialError
from miro_bridge.doc_locator import find_doc_by_title
from miro_bridge.doc_reconcile import (
    STRATEGY_MCP,
    ReconciliationResult,
    create_standalone_doc,
    reconcile,
)
from miro_bridge.http_utils import _error, _parse_body, _path_method, _preflight, _request_id, _response
from miro_bridge.mcp_client import McpError, McpSession, open_session
from miro_bridge.miro_api import MiroApiError, MiroClient
from miro_bridge.observability import _now_z, emit_structured_observability
from miro_bridge.openai_api import OpenAiError, analyze_pdf, upload_pdf

REQUIRED_FIELDS = ("boardId", "itemId")
SOURCE_ITEM_TYPE = "document"


class InvalidSourceItem(ValueError):
    pass


class TargetNotFound(LookupError):
    def __init__(self, title: str):
        self.title = title
        super().__init__(f"Target doc titled '{title}' not found on board.")


class WriteFailed(RuntimeError):
    """Reconciliation did not place the answer on the board."""

    def __init__(self, message: str, result: ReconciliationResult):
        self.result = result
        super().__init__(message)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _missing_fields(body: Dict[str, Any]) -> List[str]:
    return [name for name in REQUIRED_FIELDS if not str(body.get(name) or "").strip()]


def _load_pdf(miro: MiroClient, board_id: str, item_id: str) -> bytes:
    item = miro.get_item(board_id, item_id)
    item_type = str(item.get("type") or "")
    if item_type != SOURCE_ITEM_TYPE:
        raise InvalidSourceItem(f"Selected item is not a document item. REST type={item_type or '(none)'}")

    doc = miro.get_document(board_id, item_id)
    url = download_url_from_document(doc, base_url=miro.base_url)
    if not url:
        raise ResolutionError("No download URL found in document item response.")
    return resolve_binary(url, miro.token).data


def _open_mcp(write_mode: str) -> Optional[McpSession]:
    if write_mode == "rest":
        return None
    token = credentials.miro_mcp_access_token()
    try:
        return open_session(token)
    except McpError as exc:
        if write_mode == "mcp":
            raise
        logger.warning("[WARNING] MCP session unavailable, using REST recreate: %s", exc)
        return None


def _write_answer(
    miro: MiroClient,
    board_id: str,
    item_id: str,
    answer: str,
    target_title: str,
    write_mode: str,
) -> Dict[str, Any]:
    if write_mode == "new":
        source = miro.get_item(board_id, item_id)
        position = source.get("position") if isinstance(source.get("position"), dict) else {}
        geometry = source.get("geometry") if isinstance(source.get("geometry"), dict) else {}
        x = float(position.get("x") or 0) + float(geometry.get("width") or 0) / 2 + 400
        y = float(position.get("y") or 0)
        result = create_standalone_doc(miro, board_id, answer, f"{target_title} {_now_z()}", x, y)
        return {"targetItemId": result.item_id, "writeResult": result.as_dict()}

    target = find_doc_by_title(miro, board_id, target_title)
    if target is None:
        raise TargetNotFound(target_title)

    session = _open_mcp(write_mode)
    result = reconcile(
        target,
        answer,
        miro=miro,
        board_id=board_id,
        session=session,
        strategy=write_mode,
        title=target_title,
    )
    if result.conflict:
        raise WriteFailed(f"Doc '{target_title}' changed concurrently; update rejected.", result)
    if not result.updated:
        if result.strategy == STRATEGY_MCP:
            raise WriteFailed(f"Versioned update of doc '{target_title}' failed for every variant.", result)
        if not result.fallback_item_id:
            raise WriteFailed(f"Could not write answer to doc '{target_title}' or a fallback text item.", result)
    return {"targetItemId": result.item_id or target.id, "writeResult": result.as_dict()}


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def _handle_analyze(body: Dict[str, Any]) -> Dict[str, Any]:
    missing = _missing_fields(body)
    if missing:
        return _error(400, f"{' or '.join(missing)} missing.", missing=missing)

    write_mode = str(body.get("writeMode") or config.DEFAULT_WRITE_MODE).strip().lower()
    if write_mode not in config.VALID_WRITE_MODES:
        return _error(400, f"writeMode must be one of {sorted(config.VALID_WRITE_MODES)}.")

    token = credentials.miro_access_token()
    if not token:
        return _error(500, "Server misconfigured: MIRO_ACCESS_TOKEN is missing.")
    api_key = credentials.openai_api_key(body.get("openaiKey"))
    if not api_key:
        return _error(400, "openaiKey missing.")

    board_id = str(body["boardId"]).strip()
    item_id = str(body["itemId"]).strip()
    target_title = str(body.get("targetTitle") or config.DEFAULT_TARGET_TITLE).strip()
    model = str(body.get("model") or config.OPENAI_DEFAULT_MODEL).strip()
    prompt = credentials.prompt_template(body.get("prompt"))

    miro = MiroClient(token)
    try:
        pdf_bytes = _load_pdf(miro, board_id, item_id)
    except InvalidSourceItem as exc:
        return _error(400, str(exc))

    file_meta = upload_pdf(api_key, f"miro-{item_id}.pdf", pdf_bytes)
    answer = analyze_pdf(api_key, model, prompt, str(file_meta["id"]))
    if not answer.strip():
        return _error(502, "OpenAI returned no output text.", openaiFileId=file_meta["id"])

    try:
        written = _write_answer(miro, board_id, item_id, answer, target_title, write_mode)
    except TargetNotFound as exc:
        return _error(404, str(exc), targetTitle=exc.title, answer=answer, openaiFileId=file_meta["id"])
    except WriteFailed as exc:
        status = 409 if exc.result.conflict else 502
        return _error(
            status,
            str(exc),
            targetTitle=target_title,
            answer=answer,
            attempts=[a.as_dict() for a in exc.result.attempts],
        )

    return _response(
        200,
        {
            "ok": True,
            "success": True,
            "boardId": board_id,
            "itemId": item_id,
            "openaiFileId": file_meta["id"],
            "answer": answer,
            "targetTitle": target_title,
            **written,
        },
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict:
    """Main Lambda entry point."""
    method, path = _path_method(event)
    request_id = _request_id(context)
    logger.info("analyze_pdf: %s %s", method, path)

    if method == "OPTIONS":
        return _preflight()
    if method != "POST":
        return _error(405, "Use POST.")

    body = _parse_body(event)
    if body is None:
        return _error(400, "Invalid JSON body.")

    started = time.perf_counter()
    error_code = ""
    try:
        response = _handle_analyze(body)
    except ResolutionError as exc:
        logger.warning("[WARNING] PDF resolution failed: %s", exc.summary)
        response = _error(502, str(exc), steps=exc.steps)
    except (OpenAiError, MiroApiError, McpError) as exc:
        logger.warning("[WARNING] Upstream call failed: %s", exc)
        response = _error(502, str(exc))
    except CredentialError as exc:
        logger.error("Credential error: %s", exc)
        response = _error(500, str(exc))
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        response = _error(500, "Internal service error")

    if response["statusCode"] >= 400:
        error_code = f"http_{response['statusCode']}"
    emit_structured_observability(
        component="analyze_pdf",
        event="request_complete",
        request_id=request_id,
        latency_ms=int((time.perf_counter() - started) * 1000),
        error_code=error_code,
        extra={"status_code": response["statusCode"]},
    )
    return response
