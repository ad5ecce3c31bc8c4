"""miro_bridge.config — Environment variables, constants, logging.

Values are read once per container at import time. Lambdas and tests that
need different values patch the module attributes.
"""
from __future__ import annotations

import logging
import os


def _split_csv(raw: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty, lower-cased values from a csv env value."""
    values: list[str] = []
    seen: set[str] = set()
    for part in str(raw or "").split(","):
        value = part.strip().lower()
        if not value or value in seen:
            continue
        seen.add(value)
        values.append(value)
    return tuple(values)


__all__ = [
    "CORS_ORIGIN",
    "DEFAULT_PROMPT_TEMPLATE",
    "DEFAULT_TARGET_TITLE",
    "DEFAULT_WRITE_MODE",
    "HTTP_TIMEOUT_SECONDS",
    "LOCATOR_MAX_PAGES",
    "LOCATOR_PAGE_SIZE",
    "MCP_CLIENT_NAME",
    "MCP_CLIENT_VERSION",
    "MCP_PROTOCOL_VERSION",
    "MIRO_ACCESS_TOKEN",
    "MIRO_ACCESS_TOKEN_SECRET_ID",
    "MIRO_API_BASE_URL",
    "MIRO_MCP_ACCESS_TOKEN",
    "MIRO_MCP_ENDPOINT",
    "MIRO_MCP_ORIGIN",
    "OPENAI_API_BASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_API_KEY_SECRET_ID",
    "OPENAI_API_TIMEOUT_SECONDS",
    "OPENAI_DEFAULT_MODEL",
    "OPENAI_MAX_OUTPUT_TOKENS",
    "PLATFORM_API_HOSTS",
    "PROMPT_TEMPLATE_PARAMETER",
    "SECRETS_REGION",
    "SSM_REGION",
    "STICKY_GRID",
    "TABLE_ROWS_LIMIT",
    "VALID_WRITE_MODES",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIRO_API_BASE_URL = os.environ.get("MIRO_API_BASE_URL", "https://api.miro.com")
MIRO_ACCESS_TOKEN = os.environ.get("MIRO_ACCESS_TOKEN", "").strip()
MIRO_ACCESS_TOKEN_SECRET_ID = os.environ.get("MIRO_ACCESS_TOKEN_SECRET_ID", "")
MIRO_MCP_ENDPOINT = os.environ.get("MIRO_MCP_ENDPOINT", "https://mcp.miro.com/")
# Falls back to the REST token when unset.
MIRO_MCP_ACCESS_TOKEN = os.environ.get("MIRO_MCP_ACCESS_TOKEN", "").strip()
MIRO_MCP_ORIGIN = os.environ.get("MIRO_MCP_ORIGIN", "https://miro-app-mcp.vercel.app")
MCP_PROTOCOL_VERSION = os.environ.get("MCP_PROTOCOL_VERSION", "2025-06-18")
MCP_CLIENT_NAME = os.environ.get("MCP_CLIENT_NAME", "miro-board-bridge")
MCP_CLIENT_VERSION = os.environ.get("MCP_CLIENT_VERSION", "1.0")

OPENAI_API_BASE_URL = os.environ.get("OPENAI_API_BASE_URL", "https://api.openai.com")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "").strip()
OPENAI_API_KEY_SECRET_ID = os.environ.get("OPENAI_API_KEY_SECRET_ID", "")
OPENAI_DEFAULT_MODEL = os.environ.get("OPENAI_DEFAULT_MODEL", "gpt-5.2")
OPENAI_MAX_OUTPUT_TOKENS = int(os.environ.get("OPENAI_MAX_OUTPUT_TOKENS", "4000"))
OPENAI_API_TIMEOUT_SECONDS = float(os.environ.get("OPENAI_API_TIMEOUT_SECONDS", "120"))

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))
SECRETS_REGION = os.environ.get("SECRETS_REGION", os.environ.get("AWS_REGION", "us-west-2"))
SSM_REGION = os.environ.get("SSM_REGION", SECRETS_REGION)
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")

# Download candidates on these hosts are tried last (tunable heuristic).
PLATFORM_API_HOSTS = _split_csv(os.environ.get("PLATFORM_API_HOSTS", "api.miro.com")) or ("api.miro.com",)

LOCATOR_MAX_PAGES = int(os.environ.get("LOCATOR_MAX_PAGES", "50"))
LOCATOR_PAGE_SIZE = int(os.environ.get("LOCATOR_PAGE_SIZE", "50"))
DEFAULT_TARGET_TITLE = os.environ.get("DEFAULT_TARGET_TITLE", "OKR-Analyse")
VALID_WRITE_MODES = {"auto", "mcp", "rest", "new"}
DEFAULT_WRITE_MODE = os.environ.get("DEFAULT_WRITE_MODE", "auto").strip().lower()
if DEFAULT_WRITE_MODE not in VALID_WRITE_MODES:
    DEFAULT_WRITE_MODE = "auto"

TABLE_ROWS_LIMIT = int(os.environ.get("TABLE_ROWS_LIMIT", "100"))

# Sticky grid layout in board units.
STICKY_GRID = {
    "sticky_width": 280,
    "sticky_height": 170,
    "gap_x": 40,
    "gap_y": 30,
    "offset_x": 200,
    "default_table_width": 900,
    "default_table_height": 500,
}

PROMPT_TEMPLATE_PARAMETER = os.environ.get("PROMPT_TEMPLATE_PARAMETER", "")
DEFAULT_PROMPT_TEMPLATE = (
    "Analysiere das angehängte PDF-Dokument.\n"
    "Fasse die Ziele (Objectives) und messbaren Schlüsselergebnisse (Key Results) "
    "strukturiert zusammen, bewerte ihre Qualität und nenne konkrete "
    "Verbesserungsvorschläge.\n"
    "Antworte in Markdown mit kurzen Abschnitten und Aufzählungen."
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
