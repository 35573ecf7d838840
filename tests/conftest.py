"""Shared pytest fixtures."""

import json
import re
import threading
from pathlib import Path

import pytest

from models.errors import ToolInvocationError
from workflows.pipeline import Pipeline

UNIT_RE = re.compile(r"## Unit: (\S+)")

ANALYSIS = {
    "controller": "x",
    "status": "analyzed",
    "findings": [
        {"id": "finding_001", "severity": "high", "summary": "No authorization on destroy"},
    ],
    "overall_risk": "high",
}
HARDENED = {"status": "hardened", "hardened_source": "class Hardened; end\n", "summary": "added auth"}
VERIFICATION = {"status": "verified", "recommendation": "accept", "syntax_valid": True}


class StubToolClient:
    """Stands in for the external tool: canned replies by prompt kind.

    Records (kind, unit_name) for every call. Units listed in ``fail_for``
    make the tool fail; ``fail_kinds`` restricts that to certain phases.
    """

    def __init__(
        self,
        analysis=None,
        hardened=None,
        verification=None,
        answer="Because of reasons.",
        fail_for=(),
        fail_kinds=("analysis", "hardening", "verification", "ask"),
    ):
        self.replies = {
            "analysis": json.dumps(analysis if analysis is not None else ANALYSIS),
            "hardening": json.dumps(hardened if hardened is not None else HARDENED),
            "verification": json.dumps(verification if verification is not None else VERIFICATION),
            "ask": answer,
        }
        self.fail_for = set(fail_for)
        self.fail_kinds = set(fail_kinds)
        self.calls = []
        self.prompts = []
        self._lock = threading.Lock()

    @staticmethod
    def kind_of(prompt):
        if "Apply the approved hardening" in prompt:
            return "hardening"
        if "Check that the hardening" in prompt:
            return "verification"
        if "list every hardening opportunity" in prompt:
            return "analysis"
        return "ask"

    def invoke(self, prompt):
        kind = self.kind_of(prompt)
        match = UNIT_RE.search(prompt)
        name = match.group(1) if match else None
        with self._lock:
            self.calls.append((kind, name))
            self.prompts.append(prompt)
        if name in self.fail_for and kind in self.fail_kinds:
            raise ToolInvocationError(1, f"tool crashed on {name}")
        return self.replies[kind]

    def names_for(self, kind):
        with self._lock:
            return sorted(n for k, n in self.calls if k == kind)


def write_controllers(root: Path, *names: str, subdir: str = "app/controllers") -> Path:
    controllers = root / subdir
    controllers.mkdir(parents=True, exist_ok=True)
    for name in names:
        (controllers / f"{name}.rb").write_text(f"class {name.title().replace('_', '')}\nend\n")
    return controllers


@pytest.fixture
def project(tmp_path):
    """A project with two controllers plus the base controller."""
    write_controllers(tmp_path, "a_controller", "b_controller", "application_controller")
    return tmp_path


@pytest.fixture
def stub():
    return StubToolClient()


@pytest.fixture
def make_pipeline(project, stub):
    def _make(client=None, root=None, **kwargs):
        kwargs.setdefault("runs_dir", None)
        return Pipeline(root or project, client or stub, **kwargs)
    return _make


@pytest.fixture
def analyzed(make_pipeline):
    """A pipeline that has discovered and analyzed both controllers."""
    p = make_pipeline()
    p.start()
    return p
