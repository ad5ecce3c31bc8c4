"""miro_bridge.credentials — Access tokens and the prompt template.

Tokens come from the environment first and from Secrets Manager second.
The prompt template comes from the request body first, then from an SSM
parameter, then from the built-in default. Resolved values are cached per
container; the cache never holds a request-supplied value.
"""

from __future__ import annotations

import json
from typing import Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from miro_bridge import config
from miro_bridge.aws_clients import _get_secretsmanager, _get_ssm
from miro_bridge.config import logger

_secret_cache: Dict[str, str] = {}
_prompt_template_cache: Optional[str] = None

_SECRET_JSON_FIELDS = {
    "miro": ("access_token", "token", "miro_access_token", "api_key", "key"),
    "openai": ("api_key", "key", "token", "openai_api_key"),
}


class CredentialError(RuntimeError):
    """Raised when a configured secret cannot be read."""


def _extract_secret_value(kind: str, secret_string: str) -> Optional[str]:
    raw = str(secret_string or "").strip()
    if not raw:
        return None
    if raw.startswith("{") and raw.endswith("}"):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        for field in _SECRET_JSON_FIELDS.get(kind, ("api_key", "token")):
            value = payload.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    return raw


def _fetch_secret(kind: str, secret_id: str) -> str:
    cached = _secret_cache.get(secret_id)
    if cached:
        return cached
    try:
        secret_string = _get_secretsmanager().get_secret_value(SecretId=secret_id).get("SecretString") or ""
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "ClientError")
        raise CredentialError(f"Secret fetch failed ({kind}): {code}") from exc
    except BotoCoreError as exc:
        raise CredentialError(f"Secret fetch failed ({kind}): {exc.__class__.__name__}") from exc

    value = _extract_secret_value(kind, str(secret_string))
    if not value:
        raise CredentialError(f"Secret has no usable value ({kind})")
    _secret_cache[secret_id] = value
    return value


def miro_access_token() -> str:
    """Return the Miro REST token, or "" when none is configured."""
    if config.MIRO_ACCESS_TOKEN:
        return config.MIRO_ACCESS_TOKEN
    if config.MIRO_ACCESS_TOKEN_SECRET_ID:
        return _fetch_secret("miro", config.MIRO_ACCESS_TOKEN_SECRET_ID)
    return ""


def miro_mcp_access_token() -> str:
    return config.MIRO_MCP_ACCESS_TOKEN or miro_access_token()


def openai_api_key(request_key: Optional[str] = None) -> str:
    """Return the OpenAI key from the request body, env or Secrets Manager."""
    supplied = str(request_key or "").strip()
    if supplied:
        return supplied
    if config.OPENAI_API_KEY:
        return config.OPENAI_API_KEY
    if config.OPENAI_API_KEY_SECRET_ID:
        return _fetch_secret("openai", config.OPENAI_API_KEY_SECRET_ID)
    return ""


def prompt_template(request_prompt: Optional[str] = None) -> str:
    supplied = str(request_prompt or "").strip()
    if supplied:
        return supplied

    global _prompt_template_cache
    if _prompt_template_cache is not None:
        return _prompt_template_cache

    template = config.DEFAULT_PROMPT_TEMPLATE
    if config.PROMPT_TEMPLATE_PARAMETER:
        try:
            resp = _get_ssm().get_parameter(Name=config.PROMPT_TEMPLATE_PARAMETER, WithDecryption=True)
            value = str((resp.get("Parameter") or {}).get("Value") or "").strip()
            if value:
                template = value
        except (BotoCoreError, ClientError) as exc:
            logger.warning(
                "[WARNING] Prompt template parameter %s unavailable, using built-in default: %s",
                config.PROMPT_TEMPLATE_PARAMETER,
                exc,
            )
            return template
    _prompt_template_cache = template
    return template
