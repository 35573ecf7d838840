"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
SOURCE_ROOT = Path(os.getenv("HARDEN_SOURCE_ROOT", os.getenv("RAILS_ROOT", ".")))
PIPELINE_RUNS_DIR = PROJECT_ROOT / "pipeline_runs"

# Discovery
UNIT_SOURCE_DIR = os.getenv("HARDEN_UNIT_DIR", "app/controllers")
UNIT_PATTERN = os.getenv("HARDEN_UNIT_PATTERN", "*_controller.rb")
UNIT_EXCLUDE_NAMES = {
    name.strip()
    for name in os.getenv("HARDEN_UNIT_EXCLUDE", "application_controller").split(",")
    if name.strip()
}
UNIT_EXCLUDE_DIRS = {"concerns"}

# Sidecar artifacts live in <unit dir>/<SIDECAR_DIR>/<unit stem>/
SIDECAR_DIR = os.getenv("HARDEN_SIDECAR_DIR", ".harden")

# External tool
TOOL_BACKEND = os.getenv("HARDEN_TOOL_BACKEND", "cli")  # cli | openai
TOOL_COMMAND = shlex.split(os.getenv("HARDEN_TOOL_COMMAND", "claude -p"))
# Unset means no timeout: a hung tool process blocks its phase barrier
TOOL_TIMEOUT = float(os.environ["HARDEN_TOOL_TIMEOUT"]) if os.getenv("HARDEN_TOOL_TIMEOUT") else None

# OpenAI (only used when TOOL_BACKEND=openai)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")

# Truncation limits (characters)
TOOL_OUTPUT_LIMIT = 500
RAW_RESPONSE_LIMIT = 1_000

# Status feed
SSE_POLL_INTERVAL = 0.5  # seconds
SSE_TIMEOUT = 1_200  # 20 minutes
SSE_MAX_CONNECTIONS = 4

# Server
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "4567"))
MAX_BODY_BYTES = 1_048_576
