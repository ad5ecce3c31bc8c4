"""miro_bridge.http_client — urllib transport returning explicit results.

``http_request`` never raises for HTTP status codes or network failures;
callers inspect ``HttpResult`` and decide whether to try an alternative.
"""

from __future__ import annotations

import json
import os
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from miro_bridge import config

_CERT_BUNDLE = os.environ.get("SSL_CERT_FILE", "")


@dataclass
class HttpResult:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").lower()

    def text(self, limit: Optional[int] = None) -> str:
        text = self.body.decode("utf-8", errors="replace")
        return text[:limit] if limit is not None else text

    def json(self) -> Any:
        raw = self.text()
        return json.loads(raw) if raw.strip() else None

    def describe(self) -> str:
        if self.error:
            return f"network error: {self.error}"
        return f"http_{self.status}: {self.text(400)}"


def _lower_headers(raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    items = raw.items() if hasattr(raw, "items") else []
    return {str(k).lower(): str(v) for k, v in items}


def _urlopen(req: urllib.request.Request, timeout: float):
    context = ssl.create_default_context(cafile=_CERT_BUNDLE) if _CERT_BUNDLE else None
    return urllib.request.urlopen(req, timeout=timeout, context=context)


def http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    data: Optional[bytes] = None,
    timeout: Optional[float] = None,
) -> HttpResult:
    req = urllib.request.Request(url=url, method=method.upper(), headers=dict(headers or {}), data=data)
    try:
        with _urlopen(req, timeout or config.HTTP_TIMEOUT_SECONDS) as resp:
            return HttpResult(
                status=int(getattr(resp, "status", 0) or 0),
                headers=_lower_headers(resp.headers),
                body=resp.read(),
                url=str(getattr(resp, "url", "") or url),
            )
    except urllib.error.HTTPError as exc:
        try:
            body = exc.read() or b""
        except (OSError, AttributeError):
            body = b""
        return HttpResult(status=int(exc.code), headers=_lower_headers(exc.headers), body=body, url=url)
    except urllib.error.URLError as exc:
        return HttpResult(status=0, url=url, error=str(exc.reason))
    except (TimeoutError, OSError) as exc:
        return HttpResult(status=0, url=url, error=f"{exc.__class__.__name__}: {exc}")


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}
