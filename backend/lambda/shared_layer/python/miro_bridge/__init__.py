"""miro_bridge — Shared layer for the Miro board bridge Lambda functions.

Provides:
    - Binary-resource resolution for board documents (PDF bytes)
    - Doc item lookup by title and content reconciliation
    - Miro REST, Miro MCP and OpenAI clients over one HTTP transport
    - Table row normalization and sticky grid placement
    - HTTP response helpers with CORS
"""

__version__ = "1.0.0"
