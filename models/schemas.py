"""
Data models for the hardening pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Phase(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    ANALYZING = "analyzing"
    AWAITING_DECISIONS = "awaiting_decisions"
    HARDENING = "hardening"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERRORED = "errored"


class UnitStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    HARDENING = "hardening"
    SKIPPED = "skipped"
    HARDENED = "hardened"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    ERROR = "error"


SKIP_ACTION = "skip"


@dataclass
class Unit:
    """One discovered source file moving through the pipeline."""
    name: str
    path: str
    full_path: str
    status: UnitStatus = UnitStatus.PENDING
    analysis: Any = None
    decision: dict | None = None
    hardened: Any = None
    verification: Any = None
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return bool(self.decision) and self.decision.get("action") == SKIP_ACTION

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "full_path": self.full_path,
            "status": self.status.value,
            "analysis": self.analysis,
            "decision": self.decision,
            "hardened": self.hardened,
            "verification": self.verification,
            "error": self.error,
        }


@dataclass
class PipelineState:
    """Everything the pipeline owns. Guarded by a single lock in Pipeline."""
    phase: Phase = Phase.IDLE
    run_id: str | None = None
    units: dict[str, Unit] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)  # [{message, at}]
    started_at: str | None = None
    completed_at: str | None = None
    generation: int = 0  # bumped by reset(); work from older generations is dropped
