"""
Activity: Analyze Unit — asks the tool for hardening findings on one unit
and stores them as the unit's analysis.json sidecar.
"""

from __future__ import annotations

import logging

from models.schemas import Unit, UnitStatus
from utils.llm import ToolClient, is_degraded, parse_response
from utils.sidecar import ANALYSIS, SidecarStore
from utils.unit_scanner import fence_language, read_source

log = logging.getLogger(__name__)


def analyze_unit(unit: Unit, client: ToolClient, sidecars: SidecarStore) -> dict:
    """
    Analyze one unit's source for hardening opportunities.

    Returns the unit update:
        {"status": "analyzed", "analysis": {...findings...}}
    """
    log.info("Analyzing %s", unit.name)
    source = read_source(unit)
    prompt = build_analysis_prompt(unit.name, source, fence_language(unit))

    result = client.invoke(prompt)
    parsed = parse_response(result)
    if is_degraded(parsed):
        log.warning("Analysis for %s is not valid JSON; keeping raw output", unit.name)

    sidecars.write(unit.full_path, ANALYSIS, parsed)

    findings = parsed.get("findings", []) if isinstance(parsed, dict) else []
    log.info("Analyzed %s: %d findings", unit.name, len(findings))
    return {"status": UnitStatus.ANALYZED, "analysis": parsed}


def build_analysis_prompt(name: str, source: str, language: str = "") -> str:
    return (
        "You are a security hardening specialist. Review the source file below "
        "and list every hardening opportunity you can find.\n\n"
        f"## Unit: {name}\n\n"
        f"```{language}\n{source}\n```\n\n"
        "## What to look for\n"
        "- Missing or overly permissive parameter filtering\n"
        "- Actions without authorization checks\n"
        "- Weak or missing input validation\n"
        "- Missing rate limiting on sensitive actions\n"
        "- CSRF exposure\n"
        "- Open redirects\n"
        "- Error handling that leaks internal details\n"
        "- Wrong or missing HTTP status codes\n"
        "- Query patterns with security or availability impact\n"
        "- Anything else that should be hardened\n\n"
        "## Output\n"
        "Reply with JSON only, no preamble and no code fences:\n"
        "{\n"
        f'  "controller": "{name}",\n'
        '  "status": "analyzed",\n'
        '  "findings": [\n'
        "    {\n"
        '      "id": "finding_001",\n'
        '      "severity": "high|medium|low",\n'
        '      "category": "authorization|validation|params|rate_limiting|csrf|redirect|info_leak|other",\n'
        '      "action": "affected action, or null if file-wide",\n'
        '      "summary": "one line",\n'
        '      "detail": "full explanation",\n'
        '      "suggested_fix": "what to change"\n'
        "    }\n"
        "  ],\n"
        '  "overall_risk": "high|medium|low",\n'
        '  "notes": "general observations"\n'
        "}"
    )
