"""
Activity: Ad-hoc questions — free-form questions about a unit and plain
explanations of a single finding. Read-only: nothing is persisted.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from models.schemas import Unit
from utils.llm import ToolClient
from utils.unit_scanner import fence_language, read_source

log = logging.getLogger(__name__)


def ask_question(unit: Unit, question: str, client: ToolClient) -> str:
    """Answer a reviewer's question about a unit, with its analysis as context."""
    log.info("Question about %s (%d chars)", unit.name, len(question))
    source = read_source(unit)
    analysis_json = json.dumps(unit.analysis or {}, indent=2)
    prompt = (
        "You are a security specialist. Answer this question about a source file.\n\n"
        f"## Unit: {unit.name}\n\n"
        f"```{fence_language(unit)}\n{source}\n```\n\n"
        f"## Analysis\n```json\n{analysis_json}\n```\n\n"
        f"## Question\n{question}\n\n"
        "Be concise and practical. Point at specific lines or methods where it helps."
    )
    return client.invoke(prompt)


def explain_finding(unit: Unit, finding: dict, client: ToolClient) -> str:
    """Explain one finding for a developer who is not a security specialist."""
    log.info("Explaining %s for %s", finding.get("id"), unit.name)
    source = read_source(unit)
    analysis_json = json.dumps(unit.analysis or {}, indent=2)
    prompt = (
        "You are a security specialist. Explain this finding in plain terms.\n\n"
        f"## Unit: {unit.name}\n\n"
        f"```{fence_language(unit)}\n{source}\n```\n\n"
        f"## Analysis\n```json\n{analysis_json}\n```\n\n"
        f"## Finding\n```json\n{json.dumps(finding, indent=2)}\n```\n\n"
        "Explain:\n"
        "1. The practical risk (what could an attacker do?)\n"
        "2. How to fix it, with code\n"
        "3. How serious it is compared with other common issues\n\n"
        "Keep it short."
    )
    return client.invoke(prompt)


def find_finding(analysis: Any, finding_id: str) -> dict | None:
    if not isinstance(analysis, dict):
        return None
    for finding in analysis.get("findings") or []:
        if isinstance(finding, dict) and finding.get("id") == finding_id:
            return finding
    return None
