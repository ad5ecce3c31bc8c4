"""miro_bridge.aws_clients — Lazy-singleton AWS service clients.

Secrets Manager holds the Miro REST token (``MIRO_ACCESS_TOKEN_SECRET_ID``)
and the OpenAI key (``OPENAI_API_KEY_SECRET_ID``); SSM holds the analysis
prompt template (``PROMPT_TEMPLATE_PARAMETER``). Both are read through
``miro_bridge.credentials`` and nothing else in the layer calls AWS.

Clients are created on first call and cached for the life of the container,
so cold starts only pay the boto3 construction cost when a secret or
parameter is actually needed.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from miro_bridge.config import SECRETS_REGION, SSM_REGION

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ssm = None
_secretsmanager = None


def _get_ssm(region: Optional[str] = None):
    """Get (or create) the SSM client singleton."""
    global _ssm
    if _ssm is None:
        _ssm = boto3.client(
            "ssm",
            region_name=region or SSM_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _ssm


def _get_secretsmanager(region: Optional[str] = None):
    """Get (or create) the Secrets Manager client singleton."""
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=region or SECRETS_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _secretsmanager
