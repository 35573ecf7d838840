"""
Activity: Harden Unit — applies the reviewer's decision to one unit.

The tool returns the hardened source inside its JSON reply. It is stored as a
preview sidecar next to hardened.json; the original file is never modified.
"""

from __future__ import annotations

import json
import logging

from models.schemas import Unit, UnitStatus
from utils.llm import ToolClient, parse_response
from utils.sidecar import HARDENED, SidecarStore, preview_name
from utils.unit_scanner import fence_language, read_source

log = logging.getLogger(__name__)


def harden_unit(unit: Unit, client: ToolClient, sidecars: SidecarStore) -> dict:
    """
    Generate a hardened version of the unit according to its decision.

    Returns:
        {"status": "hardened", "hardened": {...}}
    """
    log.info("Hardening %s (action=%s)", unit.name, (unit.decision or {}).get("action"))
    source = read_source(unit)
    analysis_json = json.dumps(unit.analysis, indent=2)

    prompt = build_hardening_prompt(
        unit.name, source, analysis_json, unit.decision or {}, fence_language(unit),
    )
    result = client.invoke(prompt)
    parsed = parse_response(result)

    sidecars.write(unit.full_path, HARDENED, parsed)

    hardened_source = parsed.get("hardened_source") if isinstance(parsed, dict) else None
    if hardened_source:
        preview = sidecars.write(unit.full_path, preview_name(unit.full_path), hardened_source)
        log.info("Wrote hardened preview for %s: %s", unit.name, preview)

    return {"status": UnitStatus.HARDENED, "hardened": parsed}


def decision_instructions(decision: dict) -> str:
    """Turn a reviewer decision into instructions for the hardening prompt.

    Actions other than approve/modify/selective are passed through verbatim.
    """
    action = decision.get("action")
    if action == "approve":
        return "Apply every suggested fix from the analysis."
    if action == "modify":
        return (
            "Apply the suggested fixes, adjusted as follows:\n"
            f"{decision.get('notes', '')}"
        )
    if action == "selective":
        approved = ", ".join(str(f) for f in decision.get("approved_findings") or [])
        return (
            f"Address only these findings: {approved}. "
            "Leave everything else exactly as it is."
        )
    return (
        "Apply the fixes according to this reviewer decision:\n"
        f"```json\n{json.dumps(decision, indent=2)}\n```"
    )


def build_hardening_prompt(
    name: str, source: str, analysis_json: str, decision: dict, language: str = "",
) -> str:
    return (
        "You are a security hardening specialist. Apply the approved hardening "
        "changes to the source file below.\n\n"
        f"## Unit: {name}\n\n"
        f"```{language}\n{source}\n```\n\n"
        f"## Analysis\n```json\n{analysis_json}\n```\n\n"
        f"## Reviewer decision\n{decision_instructions(decision)}\n\n"
        "## Output\n"
        "Reply with JSON only, no preamble and no code fences:\n"
        "{\n"
        f'  "controller": "{name}",\n'
        '  "status": "hardened",\n'
        '  "hardened_source": "the complete hardened file",\n'
        '  "summary": "what changed",\n'
        '  "changes_applied": [\n'
        '    {"finding_id": "finding_001", "action_taken": "...", "lines_affected": "..."}\n'
        "  ],\n"
        '  "warnings": ["anything the reviewer should double-check"]\n'
        "}"
    )
