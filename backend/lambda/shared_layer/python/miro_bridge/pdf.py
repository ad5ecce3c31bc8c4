"""miro_bridge.pdf — PDF signature check and byte diagnostics."""

from __future__ import annotations

PDF_MAGIC = b"%PDF"  # 25 50 44 46


def is_valid_pdf(data) -> bool:
    if data is None:
        return False
    return len(data) >= 4 and bytes(data[:4]) == PDF_MAGIC


def head_hex(data, length: int = 16) -> str:
    """Hex dump of the first ``length`` bytes, for error messages."""
    return bytes(data or b"")[:length].hex()
