"""test_layer.py — Unit tests for miro_bridge layer plumbing modules.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import base64
import io
import json
import os
import sys
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from botocore.exceptions import ClientError

from miro_bridge import config, credentials, http_client, openai_api
from miro_bridge.aws_clients import _get_secretsmanager, _get_ssm
from miro_bridge.http_client import HttpResult, http_request
from miro_bridge.http_utils import _error, _parse_body, _path_method, _preflight, _response
from miro_bridge.observability import _now_z
from miro_bridge.openai_api import OpenAiError
from miro_bridge.pdf import head_hex, is_valid_pdf


def _json_result(payload, status=200):
    return HttpResult(
        status=status,
        headers={"content-type": "application/json"},
        body=json.dumps(payload).encode("utf-8"),
    )


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, {"key": "val"})
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["headers"]["Access-Control-Allow-Origin"], "*")
        self.assertEqual(json.loads(resp["body"])["key"], "val")

    def test_preflight_has_no_body(self):
        resp = _preflight()
        self.assertEqual(resp["statusCode"], 204)
        self.assertEqual(resp["body"], "")
        self.assertIn("POST", resp["headers"]["Access-Control-Allow-Methods"])

    def test_error_envelope_codes(self):
        for status, code in ((400, "INVALID_INPUT"), (404, "NOT_FOUND"), (409, "CONFLICT"), (502, "UPSTREAM_ERROR"), (500, "INTERNAL_ERROR")):
            body = json.loads(_error(status, "x")["body"])
            self.assertFalse(body["success"])
            self.assertEqual(body["error_envelope"]["code"], code)

    def test_error_extra_fields_are_mirrored(self):
        body = json.loads(_error(502, "download failed", steps=["a", "b"])["body"])
        self.assertEqual(body["steps"], ["a", "b"])
        self.assertEqual(body["error_envelope"]["details"]["steps"], ["a", "b"])
        self.assertTrue(body["error_envelope"]["retryable"])

    def test_parse_body(self):
        self.assertEqual(_parse_body({"body": '{"key": "val"}'}), {"key": "val"})
        self.assertEqual(_parse_body({"body": ""}), {})

    def test_parse_body_invalid(self):
        self.assertIsNone(_parse_body({"body": "{not json"}))
        self.assertIsNone(_parse_body({"body": "[1, 2]"}))

    def test_parse_body_base64(self):
        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_parse_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_path_method(self):
        event = {"requestContext": {"http": {"method": "post", "path": "/api/v1/analyze-pdf"}}}
        self.assertEqual(_path_method(event), ("POST", "/api/v1/analyze-pdf"))
        self.assertEqual(_path_method({"httpMethod": "OPTIONS", "path": "/x"}), ("OPTIONS", "/x"))


class PdfTests(unittest.TestCase):
    def test_is_valid_pdf(self):
        cases = {
            b"": False,
            b"%PD": False,
            b"%PDF": True,
            b"%PDF-1.7\n...": True,
            b"%pdf-1.7": False,
            b" %PDF": False,
            b'{"error": "x"}': False,
        }
        for data, expected in cases.items():
            self.assertIs(is_valid_pdf(data), expected, data)

    def test_is_valid_pdf_accepts_bytearray_and_none(self):
        self.assertTrue(is_valid_pdf(bytearray(b"\x25\x50\x44\x46rest")))
        self.assertFalse(is_valid_pdf(None))

    def test_head_hex(self):
        self.assertEqual(head_hex(b"%PDF"), "25504446")
        self.assertEqual(head_hex(b"abcdef", 2), "6162")


class HttpClientTests(unittest.TestCase):
    def test_http_error_becomes_result(self):
        exc = urllib.error.HTTPError(
            "https://api.example/x", 403, "Forbidden", {"Content-Type": "text/plain"}, io.BytesIO(b"denied")
        )
        with patch.object(http_client, "_urlopen", side_effect=exc):
            result = http_request("GET", "https://api.example/x")
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 403)
        self.assertEqual(result.body, b"denied")
        self.assertEqual(result.content_type, "text/plain")
        self.assertIn("http_403", result.describe())

    def test_url_error_becomes_result(self):
        with patch.object(http_client, "_urlopen", side_effect=urllib.error.URLError("no route")):
            result = http_request("GET", "https://api.example/x")
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 0)
        self.assertIn("no route", result.describe())

    def test_success_reads_body_and_headers(self):
        resp = MagicMock()
        resp.status = 200
        resp.headers = {"Content-Type": "application/PDF"}
        resp.read.return_value = b"%PDF-1.4"
        resp.url = "https://cdn.example/final"
        resp.__enter__ = MagicMock(return_value=resp)
        resp.__exit__ = MagicMock(return_value=False)
        with patch.object(http_client, "_urlopen", return_value=resp):
            result = http_request("GET", "https://cdn.example/start")
        self.assertTrue(result.ok)
        self.assertEqual(result.content_type, "application/pdf")
        self.assertEqual(result.url, "https://cdn.example/final")


class ObservabilityTests(unittest.TestCase):
    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


class AwsClientTests(unittest.TestCase):
    @patch("miro_bridge.aws_clients.boto3")
    def test_get_secretsmanager_singleton(self, mock_boto3):
        import miro_bridge.aws_clients as clients

        clients._secretsmanager = None  # Reset singleton
        mock_boto3.client.return_value = MagicMock()

        self.assertIs(_get_secretsmanager(), _get_secretsmanager())
        mock_boto3.client.assert_called_once()
        self.assertEqual(mock_boto3.client.call_args[0][0], "secretsmanager")

        clients._secretsmanager = None  # Clean up

    @patch("miro_bridge.aws_clients.boto3")
    def test_get_ssm_singleton(self, mock_boto3):
        import miro_bridge.aws_clients as clients

        clients._ssm = None
        mock_boto3.client.return_value = MagicMock()

        self.assertIs(_get_ssm(), _get_ssm())
        mock_boto3.client.assert_called_once()

        clients._ssm = None


class CredentialTests(unittest.TestCase):
    def setUp(self):
        credentials._secret_cache.clear()
        credentials._prompt_template_cache = None

    def tearDown(self):
        credentials._secret_cache.clear()
        credentials._prompt_template_cache = None

    def test_extract_secret_value_json_and_raw(self):
        self.assertEqual(credentials._extract_secret_value("miro", '{"access_token": " abc "}'), "abc")
        self.assertEqual(credentials._extract_secret_value("openai", '{"api_key": "sk-1"}'), "sk-1")
        self.assertEqual(credentials._extract_secret_value("openai", "sk-raw"), "sk-raw")
        self.assertIsNone(credentials._extract_secret_value("openai", '{"other": "x"}'))
        self.assertIsNone(credentials._extract_secret_value("openai", ""))

    def test_miro_token_from_secret_is_cached(self):
        sm = MagicMock()
        sm.get_secret_value.return_value = {"SecretString": '{"access_token": "tok-1"}'}
        with patch.object(config, "MIRO_ACCESS_TOKEN", ""), \
                patch.object(config, "MIRO_ACCESS_TOKEN_SECRET_ID", "miro/token"), \
                patch.object(credentials, "_get_secretsmanager", return_value=sm):
            self.assertEqual(credentials.miro_access_token(), "tok-1")
            self.assertEqual(credentials.miro_access_token(), "tok-1")
        sm.get_secret_value.assert_called_once_with(SecretId="miro/token")

    def test_secret_fetch_failure_raises_credential_error(self):
        sm = MagicMock()
        sm.get_secret_value.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetSecretValue"
        )
        with patch.object(config, "MIRO_ACCESS_TOKEN", ""), \
                patch.object(config, "MIRO_ACCESS_TOKEN_SECRET_ID", "miro/token"), \
                patch.object(credentials, "_get_secretsmanager", return_value=sm):
            with self.assertRaises(credentials.CredentialError) as ctx:
                credentials.miro_access_token()
        self.assertIn("AccessDeniedException", str(ctx.exception))

    def test_openai_key_prefers_request_value(self):
        with patch.object(config, "OPENAI_API_KEY", "sk-env"):
            self.assertEqual(credentials.openai_api_key("  sk-body "), "sk-body")
            self.assertEqual(credentials.openai_api_key(None), "sk-env")
        with patch.object(config, "OPENAI_API_KEY", ""), patch.object(config, "OPENAI_API_KEY_SECRET_ID", ""):
            self.assertEqual(credentials.openai_api_key(""), "")

    def test_mcp_token_falls_back_to_rest_token(self):
        with patch.object(config, "MIRO_MCP_ACCESS_TOKEN", ""), patch.object(config, "MIRO_ACCESS_TOKEN", "rest"):
            self.assertEqual(credentials.miro_mcp_access_token(), "rest")
        with patch.object(config, "MIRO_MCP_ACCESS_TOKEN", "mcp"), patch.object(config, "MIRO_ACCESS_TOKEN", "rest"):
            self.assertEqual(credentials.miro_mcp_access_token(), "mcp")

    def test_prompt_template_override_order(self):
        ssm = MagicMock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": "from ssm"}}
        with patch.object(config, "PROMPT_TEMPLATE_PARAMETER", "/miro/prompt"), \
                patch.object(credentials, "_get_ssm", return_value=ssm):
            self.assertEqual(credentials.prompt_template("from body"), "from body")
            self.assertEqual(credentials.prompt_template(None), "from ssm")
            self.assertEqual(credentials.prompt_template(None), "from ssm")
        ssm.get_parameter.assert_called_once()

    def test_prompt_template_default_when_parameter_fails(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = ClientError({"Error": {"Code": "ParameterNotFound"}}, "GetParameter")
        with patch.object(config, "PROMPT_TEMPLATE_PARAMETER", "/miro/prompt"), \
                patch.object(credentials, "_get_ssm", return_value=ssm):
            self.assertEqual(credentials.prompt_template(), config.DEFAULT_PROMPT_TEMPLATE)
            credentials.prompt_template()
        # Failures are not cached; the parameter is read again next time.
        self.assertEqual(ssm.get_parameter.call_count, 2)


class OpenAiTests(unittest.TestCase):
    def test_upload_refuses_non_pdf(self):
        with patch.object(openai_api, "http_request") as mock_http:
            with self.assertRaises(OpenAiError) as ctx:
                openai_api.upload_pdf("sk", "x.pdf", b'{"error": "not a pdf"}')
        self.assertIn("headHex=7b22", str(ctx.exception))
        mock_http.assert_not_called()

    def test_upload_sends_multipart(self):
        with patch.object(openai_api, "http_request", return_value=_json_result({"id": "file-1"})) as mock_http:
            meta = openai_api.upload_pdf("sk", "miro-42.pdf", b"%PDF-1.4 body")
        self.assertEqual(meta["id"], "file-1")
        args, kwargs = mock_http.call_args
        self.assertEqual(args[1], "https://api.openai.com/v1/files")
        self.assertTrue(kwargs["headers"]["Content-Type"].startswith("multipart/form-data; boundary="))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk")
        self.assertIn(b'name="purpose"\r\n\r\nuser_data', kwargs["data"])
        self.assertIn(b'filename="miro-42.pdf"', kwargs["data"])
        self.assertIn(b"%PDF-1.4 body", kwargs["data"])

    def test_upload_error_status_raises(self):
        with patch.object(openai_api, "http_request", return_value=_json_result({"error": {}}, status=401)):
            with self.assertRaises(OpenAiError) as ctx:
                openai_api.upload_pdf("sk", "x.pdf", b"%PDF")
        self.assertIn("http_401", str(ctx.exception))

    def test_extract_output_text_joins_parts(self):
        payload = {
            "output": [
                {"type": "reasoning", "content": []},
                {"type": "message", "content": [
                    {"type": "output_text", "text": "first"},
                    {"type": "refusal", "refusal": "no"},
                    {"type": "output_text", "text": "second"},
                ]},
            ]
        }
        self.assertEqual(openai_api.extract_output_text(payload), "first\n\nsecond")
        self.assertEqual(openai_api.extract_output_text({"output_text": "flat"}), "flat")
        self.assertEqual(openai_api.extract_output_text({}), "")

    def test_analyze_pdf_request_shape(self):
        reply = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "answer"}]}]}
        with patch.object(openai_api, "http_request", return_value=_json_result(reply)) as mock_http:
            text = openai_api.analyze_pdf("sk", "gpt-test", "Summarize", "file-1")
        self.assertEqual(text, "answer")
        body = json.loads(mock_http.call_args[1]["data"])
        self.assertEqual(body["model"], "gpt-test")
        self.assertEqual(body["max_output_tokens"], config.OPENAI_MAX_OUTPUT_TOKENS)
        content = body["input"][0]["content"]
        self.assertEqual(content[0], {"type": "input_file", "file_id": "file-1"})
        self.assertEqual(content[1], {"type": "input_text", "text": "Summarize"})


if __name__ == "__main__":
    unittest.main()
