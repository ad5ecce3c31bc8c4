"""miro_bridge.binary_resolver — Resolve a board document's PDF bytes.

A Miro ``documentUrl`` may serve the PDF itself, JSON metadata pointing at a
presigned download link, or something mislabelled. ``resolve_binary`` walks
these cases in a fixed order and never trusts a content-type over the byte
signature: one backend answers ``content-type: application/pdf`` with a JSON
error body.

Order of steps:
    1. GET the URL with the bearer token (redirects followed). Non-2xx fails.
    2. Declared PDF: verify the magic bytes and return, or fail.
    3. JSON: extract URL candidates, platform-hosted ones last. Each is tried
       with the token, then without (presigned links often reject extra auth).
    4. Anything else: check the magic bytes, then retry the original URL once
       without the token.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urljoin, urlparse

from miro_bridge import config
from miro_bridge.config import logger
from miro_bridge.http_client import HttpResult, bearer, http_request
from miro_bridge.observability import emit_structured_observability
from miro_bridge.pdf import head_hex, is_valid_pdf

PDF_MEDIA_TYPE = "application/pdf"

_URL_FIELDS = ("url", "downloadUrl", "download_url", "documentUrl", "document_url", "href", "location")
_DATA_URL_FIELDS = ("url", "downloadUrl", "download_url", "documentUrl", "document_url", "href")
_LINK_FIELDS = ("download", "file", "self")


class ResolutionError(RuntimeError):
    """Raised when no step yields valid PDF bytes. ``steps`` lists every attempt."""

    def __init__(self, message: str, steps: Optional[List[str]] = None):
        self.steps = list(steps or [])
        detail = f" Steps: {' | '.join(self.steps)}" if self.steps else ""
        super().__init__(f"{message}{detail}")
        self.summary = message


@dataclass
class BinaryResource:
    data: bytes
    media_type: str
    source_url: str
    steps: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DownloadCandidate:
    url: str
    platform_hosted: bool


def _is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip().startswith(("http://", "https://"))


def is_platform_url(url: str, hosts: Optional[Sequence[str]] = None) -> bool:
    host = (urlparse(url).hostname or "").lower()
    for platform_host in hosts or config.PLATFORM_API_HOSTS:
        if host == platform_host or host.endswith(f".{platform_host}"):
            return True
    return False


def extract_url_candidates(meta: Any, base_url: str = "") -> List[str]:
    """Collect download URLs from a metadata document, de-duplicated in order."""
    urls: List[str] = []
    if not isinstance(meta, dict):
        return urls

    def push(value: Any) -> None:
        if not isinstance(value, str) or not value.strip():
            return
        value = value.strip()
        if _is_http_url(value):
            urls.append(value)
        elif value.startswith("/") and base_url:
            urls.append(urljoin(base_url, value))

    for key in _URL_FIELDS:
        push(meta.get(key))
    data = meta.get("data")
    if isinstance(data, dict):
        for key in _DATA_URL_FIELDS:
            push(data.get(key))
    for links_key in ("links", "_links"):
        links = meta.get(links_key)
        if isinstance(links, dict):
            for key in _LINK_FIELDS:
                link = links.get(key)
                # HAL style: {"download": {"href": "..."}}
                push(link.get("href") if isinstance(link, dict) else link)

    for value in meta.values():
        if _is_http_url(value):
            urls.append(value.strip())
        elif isinstance(value, dict):
            for nested in value.values():
                if _is_http_url(nested):
                    urls.append(nested.strip())

    return list(dict.fromkeys(urls))


def rank_candidates(urls: Sequence[str], hosts: Optional[Sequence[str]] = None) -> List[DownloadCandidate]:
    candidates = [DownloadCandidate(url=u, platform_hosted=is_platform_url(u, hosts)) for u in urls]
    # sorted() is stable: original order is kept inside each group.
    return sorted(candidates, key=lambda c: c.platform_hosted)


def _fetch(url: str, token: str, with_auth: bool) -> HttpResult:
    headers = bearer(token) if with_auth else {}
    started = time.perf_counter()
    result = http_request("GET", url, headers=headers)
    emit_structured_observability(
        component="binary_resolver",
        event="download_fetch",
        latency_ms=int((time.perf_counter() - started) * 1000),
        error_code="" if result.ok else (f"http_{result.status}" if result.status else "url_error"),
        extra={
            "host": urlparse(url).hostname or "",
            "with_auth": with_auth,
            "content_type": result.content_type,
            "bytes": len(result.body),
        },
    )
    return result


def _accept(result: HttpResult, label: str, steps: List[str]) -> Optional[bytes]:
    """Return the body when it is a PDF; otherwise record why not."""
    if not result.ok:
        steps.append(f"{label} failed {result.describe()}")
        return None
    ct = result.content_type
    body = result.body
    if PDF_MEDIA_TYPE in ct or is_valid_pdf(body):
        if is_valid_pdf(body):
            steps.append(f"{label} ok ct={ct or '(none)'} bytes={len(body)}")
            return body
        steps.append(f"{label} ct={ct} but missing %PDF magic. headHex={head_hex(body)}")
        return None
    steps.append(f"{label} not PDF. ct={ct or '(none)'} headHex={head_hex(body)}")
    return None


def resolve_binary(initial_url: str, credential: str) -> BinaryResource:
    steps: List[str] = []

    first = _fetch(initial_url, credential, with_auth=True)
    if not first.ok:
        steps.append(f"step1/auth failed {first.describe()}")
        raise ResolutionError(f"Download (step1) failed {first.status or 'network'}: {first.text(400) or first.error}", steps)

    ct1 = first.content_type

    if PDF_MEDIA_TYPE in ct1:
        if not is_valid_pdf(first.body):
            steps.append(f"step1/auth ct={ct1} headHex={head_hex(first.body)}")
            raise ResolutionError(
                f"Download (step1) content-type=application/pdf but missing %PDF magic. "
                f"headHex={head_hex(first.body)}",
                steps,
            )
        steps.append(f"step1/auth ok ct={ct1} bytes={len(first.body)}")
        return BinaryResource(data=first.body, media_type=PDF_MEDIA_TYPE, source_url=initial_url, steps=steps)

    if "json" in ct1:
        try:
            meta = first.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            meta = None
        urls = extract_url_candidates(meta, base_url=first.url or initial_url)
        steps.append(f"step1/auth json ct={ct1} candidates={len(urls)}")
        if not urls:
            raise ResolutionError(
                f"Download (step1) returned JSON but no download URL candidates found. content-type={ct1}",
                steps,
            )

        candidates = rank_candidates(urls)
        for index, candidate in enumerate(candidates, start=1):
            for with_auth in (True, False):
                label = f"step2/{'auth' if with_auth else 'noauth'} #{index} {urlparse(candidate.url).hostname or ''}"
                data = _accept(_fetch(candidate.url, credential, with_auth), label, steps)
                if data is not None:
                    logger.info(
                        "[INFO] Resolved PDF via candidate %d/%d (auth=%s, platform=%s)",
                        index, len(candidates), with_auth, candidate.platform_hosted,
                    )
                    return BinaryResource(data=data, media_type=PDF_MEDIA_TYPE, source_url=candidate.url, steps=steps)

        raise ResolutionError(
            f"Could not resolve PDF from documentUrl JSON. Tried {len(candidates)} candidate(s). "
            f"Last error: {steps[-1]}",
            steps,
        )

    if is_valid_pdf(first.body):
        steps.append(f"step1/auth ok by magic ct={ct1 or '(none)'} bytes={len(first.body)}")
        return BinaryResource(data=first.body, media_type=PDF_MEDIA_TYPE, source_url=initial_url, steps=steps)
    steps.append(f"step1/auth not PDF. ct={ct1 or '(none)'} headHex={head_hex(first.body, 32)}")

    data = _accept(_fetch(initial_url, credential, with_auth=False), "step3/noauth", steps)
    if data is not None:
        return BinaryResource(data=data, media_type=PDF_MEDIA_TYPE, source_url=initial_url, steps=steps)

    raise ResolutionError(
        f"Download did not yield a PDF. step1 content-type={ct1 or '(none)'} headHex={head_hex(first.body, 32)}",
        steps,
    )


def download_url_from_document(doc: Dict[str, Any], base_url: str = "") -> Optional[str]:
    """Pick the download URL from a ``GET /documents/{id}`` response."""
    data = doc.get("data") if isinstance(doc, dict) else None
    if not isinstance(data, dict):
        return None
    for key in ("documentUrl", "downloadUrl", "download_url"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            value = value.strip()
            if not _is_http_url(value) and base_url:
                return urljoin(base_url, value)
            return value
    return None
