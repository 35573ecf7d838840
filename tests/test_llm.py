"""Unit tests for the tool clients and the response normalizer."""

import subprocess
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from models.errors import ToolInvocationError
from utils.llm import (
    CliToolClient,
    OpenAIToolClient,
    build_tool_client,
    is_degraded,
    parse_response,
)


# ── parse_response ──────────────────────────────────────────────────────────


class TestParseResponse:
    def test_plain_json_object(self):
        assert parse_response('{"controller": "posts_controller", "findings": []}') == {
            "controller": "posts_controller",
            "findings": [],
        }

    def test_strips_json_fence(self):
        assert parse_response('```json\n{"a":1}\n```') == {"a": 1}

    def test_fence_is_case_and_whitespace_tolerant(self):
        assert parse_response('  ```JSON  \n{"a": 1}\n```  \n') == {"a": 1}

    def test_prose_degrades_instead_of_raising(self):
        raw = "I could not analyze this controller, sorry."
        result = parse_response(raw)
        assert is_degraded(result)
        assert result["raw_response"] == raw
        assert "parse_error" in result

    def test_degraded_raw_response_is_truncated(self):
        raw = "x" * 5000
        result = parse_response(raw)
        assert len(result["raw_response"]) == 1000

    def test_json_embedded_in_prose(self):
        raw = 'Here you go:\n\n{"findings": [{"id": "finding_001"}]}\n\nHope that helps!'
        assert parse_response(raw) == {"findings": [{"id": "finding_001"}]}

    def test_braces_around_invalid_json_degrade(self):
        result = parse_response("prefix { this is: not json } suffix")
        assert is_degraded(result)

    def test_empty_string_degrades(self):
        result = parse_response("")
        assert is_degraded(result)
        assert result["raw_response"] == ""

    def test_nested_values_survive(self):
        raw = '{"nested": {"deep": {"value": 42}}, "list": [{"a": 1}]}'
        result = parse_response(raw)
        assert result["nested"]["deep"]["value"] == 42
        assert result["list"] == [{"a": 1}]

    def test_fence_only_stripped_at_edges(self):
        raw = '{"code": "```json inner ```"}'
        assert parse_response(raw) == {"code": "```json inner ```"}


# ── CliToolClient ───────────────────────────────────────────────────────────


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)


class TestCliToolClient:
    def test_returns_stripped_output(self):
        client = CliToolClient(["claude", "-p"])
        with patch("utils.llm.subprocess.run", return_value=_completed(0, "  {\"a\": 1}\n\n")):
            assert client.invoke("hello") == '{"a": 1}'

    def test_prompt_is_a_single_argument(self):
        client = CliToolClient(["claude", "-p"])
        prompt = "it's got 'quotes' and $(subshells)\nand newlines"
        with patch("utils.llm.subprocess.run", return_value=_completed(0, "ok")) as run:
            client.invoke(prompt)
        argv = run.call_args.args[0]
        assert argv == ["claude", "-p", prompt]
        assert run.call_args.kwargs["stderr"] == subprocess.STDOUT
        assert "shell" not in run.call_args.kwargs

    def test_nonzero_exit_raises_with_code_and_truncated_output(self):
        client = CliToolClient(["claude", "-p"])
        with patch("utils.llm.subprocess.run", return_value=_completed(2, "E" * 2000)):
            with pytest.raises(ToolInvocationError) as exc_info:
                client.invoke("hello")
        err = exc_info.value
        assert err.exit_code == 2
        assert len(err.output) == 500
        assert "exit 2" in str(err)

    def test_timeout_is_passed_through_and_reported(self):
        client = CliToolClient(["claude", "-p"], timeout=3)
        timeout = subprocess.TimeoutExpired(cmd=["claude"], timeout=3, output=b"partial")
        with patch("utils.llm.subprocess.run", side_effect=timeout) as run:
            with pytest.raises(ToolInvocationError) as exc_info:
                client.invoke("hello")
        assert run.call_args.kwargs["timeout"] == 3
        assert exc_info.value.exit_code is None
        assert exc_info.value.output == "partial"
        assert "timed out" in str(exc_info.value)

    def test_no_timeout_by_default(self):
        client = CliToolClient(["claude", "-p"])
        with patch("utils.llm.subprocess.run", return_value=_completed(0, "ok")) as run:
            client.invoke("hello")
        assert run.call_args.kwargs["timeout"] is None

    def test_missing_executable_raises_tool_error(self):
        client = CliToolClient(["definitely-not-installed"])
        with patch("utils.llm.subprocess.run", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(ToolInvocationError) as exc_info:
                client.invoke("hello")
        assert exc_info.value.exit_code is None

    def test_calls_are_independent(self):
        client = CliToolClient(["claude", "-p"])
        with patch("utils.llm.subprocess.run", return_value=_completed(0, "ok")) as run:
            client.invoke("first")
            client.invoke("second")
        assert [c.args[0][-1] for c in run.call_args_list] == ["first", "second"]


# ── OpenAIToolClient ────────────────────────────────────────────────────────


class TestOpenAIToolClient:
    def _client(self, content="  answer  "):
        sdk = MagicMock()
        sdk.chat.completions.create.return_value.choices = [
            MagicMock(message=MagicMock(content=content)),
        ]
        return sdk

    def test_returns_stripped_message(self):
        sdk = self._client()
        client = OpenAIToolClient(model="gpt-test", client=sdk)
        assert client.invoke("hello") == "answer"
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["messages"] == [{"role": "user", "content": "hello"}]

    def test_empty_content_returns_empty_string(self):
        client = OpenAIToolClient(model="gpt-test", client=self._client(content=None))
        assert client.invoke("hello") == ""

    def test_api_status_error_maps_to_tool_error(self):
        sdk = MagicMock()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        response = httpx.Response(500, request=request)
        sdk.chat.completions.create.side_effect = openai.APIStatusError(
            "server exploded", response=response, body=None,
        )
        client = OpenAIToolClient(model="gpt-test", client=sdk)
        with pytest.raises(ToolInvocationError) as exc_info:
            client.invoke("hello")
        assert exc_info.value.exit_code == 500

    def test_connection_error_maps_to_tool_error(self):
        sdk = MagicMock()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        sdk.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
        client = OpenAIToolClient(model="gpt-test", client=sdk)
        with pytest.raises(ToolInvocationError) as exc_info:
            client.invoke("hello")
        assert exc_info.value.exit_code is None


class TestBuildToolClient:
    def test_cli_backend(self):
        assert isinstance(build_tool_client("cli"), CliToolClient)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown tool backend"):
            build_tool_client("carrier-pigeon")
