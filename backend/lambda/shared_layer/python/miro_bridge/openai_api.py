"""miro_bridge.openai_api — OpenAI file upload and Responses calls."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Optional

from miro_bridge import config
from miro_bridge.http_client import bearer, http_request
from miro_bridge.observability import emit_structured_observability
from miro_bridge.pdf import head_hex, is_valid_pdf


class OpenAiError(RuntimeError):
    pass


def _endpoint(path: str) -> str:
    return f"{config.OPENAI_API_BASE_URL.rstrip('/')}{path}"


def _safe_pdf_name(filename: str) -> str:
    name = str(filename or "").strip()
    return name if name.lower().endswith(".pdf") else "document.pdf"


def _multipart(fields: Dict[str, str], file_field: str, filename: str, data: bytes, media_type: str) -> tuple:
    boundary = f"----miro-bridge-{uuid.uuid4().hex}"
    parts = []
    for key, value in fields.items():
        parts.append(
            f"--{boundary}\r\nContent-Disposition: form-data; name=\"{key}\"\r\n\r\n{value}\r\n".encode("utf-8")
        )
    parts.append(
        (
            f"--{boundary}\r\nContent-Disposition: form-data; name=\"{file_field}\"; filename=\"{filename}\"\r\n"
            f"Content-Type: {media_type}\r\n\r\n"
        ).encode("utf-8")
        + data
        + b"\r\n"
    )
    parts.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"


def _call(path: str, api_key: str, data: bytes, content_type: str, tool_name: str) -> Dict[str, Any]:
    url = _endpoint(path)
    started = time.perf_counter()
    result = http_request(
        "POST",
        url,
        headers={**bearer(api_key), "Content-Type": content_type},
        data=data,
        timeout=config.OPENAI_API_TIMEOUT_SECONDS,
    )
    emit_structured_observability(
        component="openai_api",
        event="openai_call",
        tool_name=tool_name,
        latency_ms=int((time.perf_counter() - started) * 1000),
        error_code="" if result.ok else (f"http_{result.status}" if result.status else "url_error"),
    )
    if not result.ok:
        raise OpenAiError(f"OpenAI {path} -> {result.describe()}")
    try:
        payload = result.json()
    except json.JSONDecodeError as exc:
        raise OpenAiError(f"OpenAI {path} payload was not valid JSON") from exc
    if not isinstance(payload, dict):
        raise OpenAiError(f"OpenAI {path} payload is not an object")
    if isinstance(payload.get("error"), dict):
        error_type = str(payload["error"].get("type") or "unknown")
        error_message = str(payload["error"].get("message") or "Unknown OpenAI error")
        raise OpenAiError(f"OpenAI {path} error ({error_type}): {error_message}")
    return payload


def upload_pdf(api_key: str, filename: str, data: bytes) -> Dict[str, Any]:
    """Upload PDF bytes with ``purpose=user_data``; returns the file object."""
    if not is_valid_pdf(data):
        raise OpenAiError(f"Refusing to upload non-PDF bytes to OpenAI. headHex={head_hex(data, 32)}")
    body, content_type = _multipart(
        {"purpose": "user_data"}, "file", _safe_pdf_name(filename), bytes(data), "application/pdf"
    )
    payload = _call("/v1/files", api_key, body, content_type, "openai.files.create")
    if not payload.get("id"):
        raise OpenAiError("OpenAI /v1/files response has no file id")
    return payload


def extract_output_text(payload: Dict[str, Any]) -> str:
    """Concatenate every ``output_text`` part of the response's message items."""
    chunks = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    if chunks:
        return "\n\n".join(chunks)
    convenience = payload.get("output_text")
    return convenience if isinstance(convenience, str) else ""


def analyze_pdf(
    api_key: str,
    model: str,
    prompt: str,
    file_id: str,
    max_output_tokens: Optional[int] = None,
) -> str:
    body = {
        "model": model or config.OPENAI_DEFAULT_MODEL,
        "input": [
            {
                "role": "user",
                "content": [
                    {"type": "input_file", "file_id": file_id},
                    {"type": "input_text", "text": prompt},
                ],
            }
        ],
        "max_output_tokens": max_output_tokens or config.OPENAI_MAX_OUTPUT_TOKENS,
    }
    payload = _call(
        "/v1/responses",
        api_key,
        json.dumps(body).encode("utf-8"),
        "application/json",
        "openai.responses.create",
    )
    return extract_output_text(payload)
