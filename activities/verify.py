"""
Activity: Verify Unit — has the tool check the hardened source against the
original and its analysis.
"""

from __future__ import annotations

import json
import logging

from models.schemas import Unit, UnitStatus
from utils.llm import ToolClient, parse_response
from utils.sidecar import VERIFICATION, SidecarStore
from utils.unit_scanner import fence_language, read_source

log = logging.getLogger(__name__)


def verify_unit(unit: Unit, client: ToolClient, sidecars: SidecarStore) -> dict:
    log.info("Verifying %s", unit.name)
    original_source = read_source(unit)
    hardened_source = ""
    if isinstance(unit.hardened, dict):
        hardened_source = unit.hardened.get("hardened_source") or ""
    analysis_json = json.dumps(unit.analysis, indent=2)

    prompt = build_verification_prompt(
        unit.name, original_source, hardened_source, analysis_json, fence_language(unit),
    )
    result = client.invoke(prompt)
    parsed = parse_response(result)

    sidecars.write(unit.full_path, VERIFICATION, parsed)

    if isinstance(parsed, dict):
        log.info("Verified %s: recommendation=%s", unit.name, parsed.get("recommendation"))
    return {"status": UnitStatus.VERIFIED, "verification": parsed}


def build_verification_prompt(
    name: str,
    original_source: str,
    hardened_source: str,
    analysis_json: str,
    language: str = "",
) -> str:
    return (
        "You are a security auditor. Check that the hardening below was applied "
        "correctly.\n\n"
        f"## Unit: {name}\n\n"
        f"### Original\n```{language}\n{original_source}\n```\n\n"
        f"### Hardened\n```{language}\n{hardened_source}\n```\n\n"
        f"### Analysis\n```json\n{analysis_json}\n```\n\n"
        "## Checks\n"
        "1. Every finding in the analysis was addressed\n"
        "2. No new issues were introduced\n"
        "3. The hardened code is syntactically valid\n"
        "4. Anything else worth flagging\n\n"
        "## Output\n"
        "Reply with JSON only, no preamble and no code fences:\n"
        "{\n"
        f'  "controller": "{name}",\n'
        '  "status": "verified",\n'
        '  "findings_addressed": [\n'
        '    {"finding_id": "finding_001", "addressed": true, "notes": ""}\n'
        "  ],\n"
        '  "new_issues": [],\n'
        '  "syntax_valid": true,\n'
        '  "recommendation": "accept|review|reject",\n'
        '  "notes": ""\n'
        "}"
    )
