"""
Exceptions raised by the hardening pipeline.
"""

from __future__ import annotations


class HardenError(Exception):
    """Base class for pipeline errors."""


class DiscoveryError(HardenError):
    """The source root to scan for units does not exist."""


class ToolInvocationError(HardenError):
    """The external reasoning tool exited with a failure status."""

    def __init__(self, exit_code: int | None, output: str, reason: str | None = None):
        self.exit_code = exit_code
        self.output = output
        if reason is None:
            reason = f"exit {exit_code}"
        super().__init__(f"Tool invocation failed ({reason}): {output}")


class UnitNotFound(HardenError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unit not found: {name}")


class FindingNotFound(HardenError):
    def __init__(self, name: str, finding_id: str):
        self.name = name
        self.finding_id = finding_id
        super().__init__(f"Finding {finding_id} not found for {name}")


class PhaseConflict(HardenError):
    """An operation was requested while the pipeline is in the wrong phase."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Pipeline is {actual}, expected {expected}")


class SidecarPathError(HardenError):
    """A sidecar write would land outside the project root."""
