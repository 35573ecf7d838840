"""
External reasoning tool helpers — shared across all activities.

Two backends implement the same one-shot contract, ``invoke(prompt) -> str``:
the CLI tool (``claude -p`` by default) run as a subprocess, and the OpenAI
chat completions API. Neither keeps conversation state or retries.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from typing import Any, Protocol, Sequence

from openai import APIStatusError, OpenAI, OpenAIError

import config
from models.errors import ToolInvocationError

log = logging.getLogger(__name__)


class ToolClient(Protocol):
    def invoke(self, prompt: str) -> str: ...


class CliToolClient:
    """Runs the reasoning tool once per prompt as a child process."""

    def __init__(
        self,
        command: Sequence[str] | None = None,
        timeout: float | None = None,
        output_limit: int | None = None,
    ):
        self.command = list(command or config.TOOL_COMMAND)
        self.timeout = timeout
        self.output_limit = output_limit or config.TOOL_OUTPUT_LIMIT

    def invoke(self, prompt: str) -> str:
        # The prompt is a single argv element, so no shell quoting is involved
        argv = [*self.command, prompt]
        log.info("Invoking %s (%d prompt chars)", self.command[0], len(prompt))
        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = _decode(e.output)
            raise ToolInvocationError(
                None, output[: self.output_limit],
                reason=f"timed out after {self.timeout}s",
            ) from e
        except OSError as e:
            raise ToolInvocationError(None, str(e), reason="could not start") from e

        output = proc.stdout or ""
        if proc.returncode != 0:
            raise ToolInvocationError(proc.returncode, output[: self.output_limit])

        log.info(
            "%s finished in %.1fs (%d chars)",
            self.command[0], time.monotonic() - start, len(output),
        )
        return output.strip()


class OpenAIToolClient:
    """Same contract as CliToolClient, over the OpenAI chat completions API."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_tokens: int = 8192,
        client: OpenAI | None = None,
    ):
        self.model = model or config.OPENAI_MODEL
        self.max_tokens = max_tokens
        self._client = client or OpenAI(api_key=api_key or config.OPENAI_API_KEY, timeout=timeout)

    def invoke(self, prompt: str) -> str:
        log.info("Invoking %s (%d prompt chars)", self.model, len(prompt))
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
            )
        except APIStatusError as e:
            raise ToolInvocationError(e.status_code, str(e)[: config.TOOL_OUTPUT_LIMIT]) from e
        except OpenAIError as e:
            raise ToolInvocationError(None, str(e)[: config.TOOL_OUTPUT_LIMIT], reason="api error") from e
        return (resp.choices[0].message.content or "").strip()


def build_tool_client(backend: str | None = None) -> ToolClient:
    """Construct the tool client selected by HARDEN_TOOL_BACKEND."""
    backend = backend or config.TOOL_BACKEND
    if backend == "cli":
        return CliToolClient(config.TOOL_COMMAND, timeout=config.TOOL_TIMEOUT)
    if backend == "openai":
        return OpenAIToolClient(timeout=config.TOOL_TIMEOUT)
    raise ValueError(f"Unknown tool backend: {backend!r}")


def _decode(output: bytes | str | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output


# ── Response normalizing ──────────────────────────────────────────────

_FENCE_OPEN = re.compile(r"\A\s*```json\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*\Z")


def parse_response(raw: str) -> Any:
    """Parse the tool's text output as JSON.

    Tools like to wrap JSON in a ```json fence or surround it with prose, so
    the fence is stripped first and the outermost {...} span is tried as a
    fallback. Unparseable output never raises; it comes back as
    {"parse_error": ..., "raw_response": <truncated raw>}.
    """
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", raw)).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        error = str(e)

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(raw[start:end + 1])
        except json.JSONDecodeError as e:
            error = str(e)
    else:
        error = f"No JSON object found in response ({error})"

    log.warning("Failed to parse tool response: %s", raw[:200])
    return {"parse_error": error, "raw_response": raw[: config.RAW_RESPONSE_LIMIT]}


def is_degraded(result: Any) -> bool:
    return isinstance(result, dict) and "parse_error" in result
